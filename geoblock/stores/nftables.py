"""nftables backend: one named interval set per (action[, country]) plus a rule.

Layout inside our own table::

    table inet geoblock {
        set geo_deny_cn { type ipv4_addr; flags interval; elements = { ... } }
        chain input {
            type filter hook input priority -10; policy accept;
            ip saddr @geo_deny_cn counter drop comment "geoblock"
            # allow mode only:
            iif lo accept comment "geoblock:default"
            ct state established,related accept comment "geoblock:default"
            counter drop comment "geoblock:default"
        }
    }

Reads use ``nft -j`` (structured JSON); writes are ``nft -f -`` scripts.
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from ..errors import BackendUnavailable, PartialApplyFailure
from ..models import ALL_COUNTRIES, Action, CountryCounters, Layout, PolicyEntry, Prefix
from .base import EnforcementStore

DEFAULT_TABLE = "geoblock"
FAMILY = "inet"
CHAIN = "input"
CHAIN_PRIORITY = -10
RULE_COMMENT = "geoblock"
DEFAULT_RULE_COMMENT = "geoblock:default"
CHUNK_SIZE = 1000

SET_NAME = re.compile(r'^geo_(allow|deny)(?:_([a-z]{2}))?$')

VERDICTS = {Action.ALLOW: "accept", Action.DENY: "drop"}

logger = logging.getLogger(__name__)


def set_name(action: Action, country: Optional[str] = None) -> str:
    return f"geo_{action.value}_{country}" if country else f"geo_{action.value}"


def parse_set_name(name: str) -> Optional[Tuple[Action, Optional[str]]]:
    """Return (action, country) for a set we manage, None for anything else."""
    m = SET_NAME.match(name or "")
    if not m:
        return None
    return Action(m.group(1)), m.group(2)


class RuleInfo(NamedTuple):
    handle: int
    packets: int = 0
    bytes: int = 0


class TableState(NamedTuple):
    sets: Dict[str, Set[Prefix]]
    rules: Dict[str, RuleInfo]
    default_rules: List[int]


# ---------------- JSON grammar ----------------
def parse_element(elem: Any) -> Optional[Prefix]:
    """Convert one JSON set element into a Prefix.

    Accepted shapes: ``"1.2.3.4"``, ``{"prefix": {"addr": ..., "len": ...}}``
    and either of those wrapped in ``{"elem": {"val": ...}}``. Ranges are
    not produced by our sets and are ignored.
    """
    if isinstance(elem, dict) and "elem" in elem:
        elem = elem["elem"].get("val")
    try:
        if isinstance(elem, str):
            return Prefix.parse(elem)
        if isinstance(elem, dict) and "prefix" in elem:
            p = elem["prefix"]
            return Prefix.parse(f"{p['addr']}/{p['len']}")
    except (KeyError, ValueError):
        logger.debug("Ignoring unparseable set element: %r", elem)
    return None


def parse_ruleset(doc: Dict[str, Any], chain: str = CHAIN) -> TableState:
    """Extract managed sets, their rules and our default rules from ``nft -j`` output."""
    sets: Dict[str, Set[Prefix]] = {}
    rules: Dict[str, RuleInfo] = {}
    default_rules: List[int] = []

    for obj in doc.get("nftables", []):
        if "set" in obj:
            s = obj["set"]
            if parse_set_name(s.get("name")) is None:
                continue
            prefixes = (parse_element(e) for e in s.get("elem", []))
            sets[s["name"]] = {p for p in prefixes if p is not None}
        elif "rule" in obj:
            r = obj["rule"]
            if r.get("chain") != chain:
                continue
            if r.get("comment") == DEFAULT_RULE_COMMENT:
                default_rules.append(r["handle"])
                continue
            ref, packets, nbytes = None, 0, 0
            for expr in r.get("expr", []):
                right = expr.get("match", {}).get("right")
                if isinstance(right, str) and right.startswith("@"):
                    ref = right[1:]
                counter = expr.get("counter")
                if isinstance(counter, dict):
                    packets, nbytes = counter.get("packets", 0), counter.get("bytes", 0)
            if ref and parse_set_name(ref) is not None:
                rules[ref] = RuleInfo(r["handle"], packets, nbytes)

    return TableState(sets, rules, default_rules)


def chunks(items: List, size: int) -> Iterable[List]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class NftablesStore(EnforcementStore):
    """Enforcement store backed by an nftables table owned by this process."""

    def __init__(self, table: str = DEFAULT_TABLE, layout: Layout = Layout.PER_COUNTRY,
                 default_drop: bool = False, chunk_size: int = CHUNK_SIZE, **kwargs):
        super().__init__(**kwargs)
        self.table = table
        self.layout = layout
        self.default_drop = default_drop
        self.chunk_size = chunk_size
        self._table_missing = False

    # ---------------- nft plumbing ----------------
    def _script(self, text: str) -> None:
        self.execute(["nft", "-f", "-"], input_text=text)

    def _list(self) -> TableState:
        if self._table_missing:
            return TableState({}, {}, [])
        out = self.execute(["nft", "-j", "list", "table", FAMILY, self.table])
        try:
            doc = json.loads(out)
        except ValueError as e:
            raise BackendUnavailable(f"unparseable nft output: {e}") from e
        return parse_ruleset(doc)

    def _base_script(self) -> str:
        return (
            f"add table {FAMILY} {self.table}\n"
            f"add chain {FAMILY} {self.table} {CHAIN} "
            f"{{ type filter hook input priority {CHAIN_PRIORITY} ; policy accept ; }}\n"
        )

    def _sync_default_rules(self, state: TableState) -> None:
        """Install the allow-mode catch-all drop, or remove it in deny mode."""
        if self.default_drop and not state.default_rules:
            prefix = f"add rule {FAMILY} {self.table} {CHAIN}"
            comment = f'comment "{DEFAULT_RULE_COMMENT}"'
            self._script(
                f"{prefix} iif lo accept {comment}\n"
                f"{prefix} ct state established,related accept {comment}\n"
                f"{prefix} counter drop {comment}\n"
            )
            logger.info("Installed default drop rules in %s %s", FAMILY, self.table)
        elif not self.default_drop and state.default_rules:
            self._script("".join(
                f"delete rule {FAMILY} {self.table} {CHAIN} handle {h}\n" for h in state.default_rules))
            logger.info("Removed %d default rules from %s %s", len(state.default_rules), FAMILY, self.table)

    # ---------------- lifecycle ----------------
    def open(self) -> None:
        with self.lock:
            if self.read_only:
                # nothing to create; a table that does not exist yet reads as empty
                out = self.execute(["nft", "-j", "list", "tables", FAMILY])
                try:
                    doc = json.loads(out or "{}")
                except ValueError as e:
                    raise BackendUnavailable(f"unparseable nft output: {e}") from e
                names = {obj["table"].get("name") for obj in doc.get("nftables", []) if "table" in obj}
                self._table_missing = self.table not in names
                return
            self._script(self._base_script())
            state = self._list()
            # the catch-all drop goes in only once allow sets have content
            populated = any(prefixes and parse_set_name(name)[0] is Action.ALLOW
                            for name, prefixes in state.sets.items())
            if not self.default_drop or populated:
                self._sync_default_rules(state)

    # ---------------- contract ----------------
    def snapshot(self) -> Set[PolicyEntry]:
        with self.lock:
            state = self._list()
        entries = set()
        for name, prefixes in state.sets.items():
            action, country = parse_set_name(name)
            entries.update(PolicyEntry(p, action, country) for p in prefixes)
        return entries

    def _group(self, entries: Iterable[PolicyEntry]) -> Dict[str, Tuple[Action, Optional[str], List[Prefix]]]:
        groups: Dict[str, Tuple[Action, Optional[str], List[Prefix]]] = {}
        for e in entries:
            name = set_name(e.action, e.country)
            groups.setdefault(name, (e.action, e.country, []))[2].append(e.prefix)
        return groups

    def _elements(self, verb: str, name: str, action: Action, country: Optional[str],
                  prefixes: List[Prefix]) -> List[PolicyEntry]:
        """Add or delete elements chunk by chunk; return the entries that failed."""
        failed = []
        stmt = f"{verb} element {FAMILY} {self.table} {name}"
        for chunk in chunks(sorted(prefixes), self.chunk_size):
            try:
                self._script(f"{stmt} {{ {', '.join(map(str, chunk))} }}\n")
                continue
            except BackendUnavailable as e:
                logger.debug("Batch %s on %s failed, retrying one by one: %s", verb, name, e)
            for p in chunk:
                try:
                    self._script(f"{stmt} {{ {p} }}\n")
                except BackendUnavailable as e:
                    logger.debug("%s %s in %s failed: %s", verb, p, name, e)
                    failed.append(PolicyEntry(p, action, country))
        return failed

    def apply_diff(self, to_add: Set[PolicyEntry], to_remove: Set[PolicyEntry]) -> None:
        failed: List[PolicyEntry] = []
        self.check_writable()
        with self.lock:
            state = self._list()
            adds = self._group(to_add)
            removes = self._group(to_remove)

            # additions first so nothing shared by old and new state goes missing
            for name, (action, country, prefixes) in sorted(adds.items()):
                try:
                    if name not in state.sets:
                        self._script(
                            f"add set {FAMILY} {self.table} {name} "
                            f"{{ type ipv4_addr ; flags interval ; }}\n")
                    failed += self._elements("add", name, action, country, prefixes)
                    if name not in state.rules:
                        self._script(
                            f"insert rule {FAMILY} {self.table} {CHAIN} ip saddr @{name} "
                            f'counter {VERDICTS[action]} comment "{RULE_COMMENT}"\n')
                except BackendUnavailable as e:
                    logger.warning("Could not set up %s: %s", name, e)
                    failed += [PolicyEntry(p, action, country) for p in prefixes]

            for name, (action, country, prefixes) in sorted(removes.items()):
                if name not in state.sets:
                    continue
                kept = (state.sets[name] - set(prefixes)) | set(adds.get(name, (None, None, []))[2])
                if kept:
                    failed += self._elements("delete", name, action, country, prefixes)
                    continue
                script = ""
                if name in state.rules:
                    script += f"delete rule {FAMILY} {self.table} {CHAIN} handle {state.rules[name].handle}\n"
                script += f"delete set {FAMILY} {self.table} {name}\n"
                try:
                    self._script(script)
                    logger.debug("Dropped emptied set %s", name)
                except BackendUnavailable as e:
                    logger.warning("Could not drop %s: %s", name, e)
                    failed += [PolicyEntry(p, action, country) for p in prefixes]

            self._sync_default_rules(state)

        if failed:
            raise PartialApplyFailure(failed)

    def reset(self) -> None:
        self.check_writable()
        with self.lock:
            # "add" first so deleting a missing table is not an error
            self._script(f"add table {FAMILY} {self.table}\ndelete table {FAMILY} {self.table}\n")
            self._script(self._base_script())
        logger.info("Reset nftables table %s %s", FAMILY, self.table)

    def read_counts(self) -> Dict[Tuple[str, Action], CountryCounters]:
        with self.lock:
            state = self._list()
        counts = {}
        for name in sorted(state.sets):
            action, country = parse_set_name(name)
            rule = state.rules.get(name, RuleInfo(-1))
            counts[(country or ALL_COUNTRIES, action)] = CountryCounters(
                action, len(state.sets[name]), rule.packets, rule.bytes)
        return counts
