"""Reconciliation engine: fetch feeds, diff against the live store, apply.

A pass moves through ``FETCHING -> DIFFING -> APPLYING -> IDLE``. Only the
symmetric difference between desired and live state is sent to the store,
so prefixes present before and after a refresh are never touched.
"""

import enum
import logging
import threading
import time
from typing import FrozenSet, List, NamedTuple, Optional, Set, Tuple

from .errors import FeedFetchError, PartialApplyFailure
from .feeds import FeedSource, parse_feed
from .metrics import ObservabilityHub
from .models import PolicyEntry
from .policy import PolicyEntrySet
from .stores.base import EnforcementStore

MAX_LOGGED_FAILURES = 20

logger = logging.getLogger(__name__)


class State(enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    APPLYING = "applying"
    FAILED = "failed"


class PassResult(NamedTuple):
    fetched: Tuple[str, ...]
    skipped: Tuple[str, ...]
    to_add: FrozenSet[PolicyEntry]
    to_remove: FrozenSet[PolicyEntry]
    failed: Tuple[PolicyEntry, ...] = ()
    applied: bool = True


def compute_diff(desired: Set[PolicyEntry], live: Set[PolicyEntry]) -> Tuple[Set[PolicyEntry], Set[PolicyEntry]]:
    """Return ``(to_add, to_remove)`` turning ``live`` into ``desired``."""
    return desired - live, live - desired


class Reconciler:
    """Keeps the store's live state equal to the configured countries' feeds.

    Passes are serialized by an internal lock. Feeds that fail to download
    are skipped and their entries are removed like those of any country
    missing from the desired state. A periodic pass in which no feed at all
    could be fetched leaves the store untouched.
    """

    def __init__(self, config, store: EnforcementStore, source: FeedSource,
                 hub: Optional[ObservabilityHub] = None):
        self.config = config
        self.store = store
        self.source = source
        self.hub = hub or ObservabilityHub()
        self.state = State.IDLE
        self._lock = threading.Lock()

    # ---------------- phases ----------------
    def fetch(self) -> Tuple[PolicyEntrySet, List[str], List[str]]:
        """Download and parse every configured country.

        A country whose feed fails for any reason is skipped; the others
        are still returned.

        Returns:
            (desired state, fetched countries, skipped countries)
        """
        desired = PolicyEntrySet(self.config.mode)
        fetched, skipped = [], []
        for country in self.config.countries:
            try:
                prefixes = list(parse_feed(self.source.fetch(country)))
                if not prefixes:
                    raise FeedFetchError(country, "feed contained no valid prefixes")
            except FeedFetchError as e:
                logger.warning("Skipping %s: %s", country, e)
                skipped.append(country)
                continue
            except Exception:
                logger.exception("Unexpected error fetching %s, skipping", country)
                skipped.append(country)
                continue
            desired.add_country(country, prefixes)
            logger.debug("Fetched %d distinct prefixes for %s", len(desired.prefixes(country)), country)
            fetched.append(country)
        return desired, fetched, skipped

    def _publish(self, desired: PolicyEntrySet, fetched: List[str], skipped: List[str]) -> None:
        now = time.time()
        for country in fetched:
            self.hub.record_country(country, desired.action, True, timestamp=now)
        for country in skipped:
            self.hub.record_country(country, desired.action, False)

    # ---------------- passes ----------------
    def run_pass(self, initial: bool = False) -> PassResult:
        """Run one full reconciliation pass.

        Raises:
            BackendUnavailable: the store could not be read or written.
            FeedFetchError: only when ``initial`` and every feed failed.
        """
        with self._lock:
            try:
                result = self._run(initial)
            except Exception:
                self.state = State.FAILED
                self.hub.record_pass("failed")
                raise
            if not result.fetched:
                self.hub.record_pass("skipped")
            else:
                self.hub.record_pass("partial" if result.failed else "success")
            return result

    def initial_pass(self) -> PassResult:
        return self.run_pass(initial=True)

    def _run(self, initial: bool) -> PassResult:
        self.state = State.FETCHING
        desired, fetched, skipped = self.fetch()
        if not fetched:
            if initial:
                raise FeedFetchError(",".join(skipped), "no country feed could be fetched")
            logger.warning("No feed could be fetched this cycle; keeping the live state")
            self.state = State.IDLE
            return PassResult((), tuple(skipped), frozenset(), frozenset(), applied=False)

        self.state = State.DIFFING
        if initial and self.config.reset_on_start and not self.config.dry_run:
            self.store.reset()
            live: Set[PolicyEntry] = set()
        else:
            live = self.store.snapshot()
        to_add, to_remove = compute_diff(desired.entries(self.store.layout), live)
        logger.info("Reconciling %d countries (%d skipped): +%d -%d, %d live entries",
                    len(fetched), len(skipped), len(to_add), len(to_remove), len(live))

        if self.config.dry_run:
            for e in sorted(to_add, key=str):
                logger.info("[DRY RUN] Would add %s", e)
            for e in sorted(to_remove, key=str):
                logger.info("[DRY RUN] Would remove %s", e)
            self.state = State.IDLE
            return PassResult(tuple(fetched), tuple(skipped), frozenset(to_add), frozenset(to_remove),
                              applied=False)

        self.state = State.APPLYING
        failed: Tuple[PolicyEntry, ...] = ()
        if to_add or to_remove:
            try:
                self.store.apply_diff(to_add, to_remove)
            except PartialApplyFailure as e:
                failed = tuple(e.failed)
                shown = ", ".join(str(x) for x in failed[:MAX_LOGGED_FAILURES])
                more = f" (+{len(failed) - MAX_LOGGED_FAILURES} more)" if len(failed) > MAX_LOGGED_FAILURES else ""
                logger.warning("%d entries failed to apply: %s%s", len(failed), shown, more)

        self._publish(desired, fetched, skipped)
        self.state = State.IDLE
        return PassResult(tuple(fetched), tuple(skipped), frozenset(to_add), frozenset(to_remove), failed)
