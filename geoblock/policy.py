"""Desired enforcement state built from the configured countries and mode."""

from typing import Dict, FrozenSet, Iterable, Set

from .models import Action, Layout, Mode, PolicyEntry, Prefix


class PolicyEntrySet:
    """In-memory desired state: ``country -> prefixes``, one action for all.

    Built from scratch on every reconciliation pass and never persisted.
    """

    def __init__(self, mode: Mode):
        self.mode = mode
        self._by_country: Dict[str, FrozenSet[Prefix]] = {}

    @property
    def action(self) -> Action:
        return self.mode.action

    def add_country(self, country: str, prefixes: Iterable[Prefix]) -> None:
        self._by_country[country] = frozenset(prefixes)

    def prefixes(self, country: str) -> FrozenSet[Prefix]:
        return self._by_country.get(country, frozenset())

    def entries(self, layout: Layout) -> Set[PolicyEntry]:
        """Return the PolicyEntry set as the given layout stores it.

        In the merged layout country attribution is dropped, so a prefix
        listed by two countries becomes a single entry.
        """
        action = self.action
        if layout is Layout.MERGED:
            return {PolicyEntry(p, action) for prefixes in self._by_country.values() for p in prefixes}
        return {PolicyEntry(p, action, cc) for cc, prefixes in self._by_country.items() for p in prefixes}
