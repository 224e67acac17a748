"""Kernel LPM-trie map backend, driven through ``bpftool``.

The XDP filter looks up each packet's source address in a pinned
``BPF_MAP_TYPE_LPM_TRIE`` map::

    struct lpm_key { __u32 prefixlen; __u32 ip; };   /* ip in network order */
    __u8 value;                                      /* 1 = pass, 0 = drop */

The map holds every configured country in one keyspace, so this store only
supports the merged layout.
"""

import json
import logging
import os
import shutil
import struct
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..errors import BackendUnavailable, PartialApplyFailure
from ..models import ALL_COUNTRIES, Action, CountryCounters, Layout, PolicyEntry, Prefix
from .base import EnforcementStore

DEFAULT_PIN_DIR = "/sys/fs/bpf/geoblock"
DEFAULT_MAP_NAME = "ip_map"
DEFAULT_PROG_NAME = "ip_filter"
BATCH_SIZE = 1000

ACTION_VALUES = {Action.ALLOW: 1, Action.DENY: 0}

logger = logging.getLogger(__name__)


# ---------------- key/value codec ----------------
def encode_key(prefix: Prefix) -> List[str]:
    """bpftool hex bytes for an lpm_key: host-order length, network-order address."""
    raw = struct.pack("=I", prefix.length) + struct.pack("!I", prefix.address)
    return [f"{b:02x}" for b in raw]


def decode_key(data: Iterable[str]) -> Prefix:
    raw = bytes(int(b, 16) for b in data)
    if len(raw) != 8:
        raise ValueError(f"unexpected key size {len(raw)}")
    (length,) = struct.unpack("=I", raw[:4])
    (address,) = struct.unpack("!I", raw[4:])
    return Prefix(address, length)


def encode_value(action: Action) -> List[str]:
    return [f"{ACTION_VALUES[action]:02x}"]


def decode_value(data: Iterable[str]) -> Action:
    raw = bytes(int(b, 16) for b in data)
    return Action.ALLOW if raw and raw[0] else Action.DENY


def parse_dump(doc: List[dict]) -> Dict[Prefix, Action]:
    """Parse ``bpftool -j map dump`` output into ``prefix -> action``."""
    entries = {}
    for item in doc:
        try:
            entries[decode_key(item["key"])] = decode_value(item["value"])
        except (KeyError, TypeError, ValueError) as e:
            logger.debug("Skipping unreadable map entry %r: %s", item, e)
    return entries


class BpfMapStore(EnforcementStore):
    """Enforcement store over a pinned LPM map.

    When ``xdp_object`` and ``interface`` are given, ``open()`` loads the
    object into ``pin_dir``, pins its maps and attaches the program to the
    interface; ``close()`` undoes both. Otherwise the map must already be
    pinned at ``map_path`` by an external loader.
    """

    layout = Layout.MERGED

    def __init__(self, map_path: Optional[str] = None, xdp_object: Optional[str] = None,
                 interface: Optional[str] = None, pin_dir: str = DEFAULT_PIN_DIR,
                 batch_size: int = BATCH_SIZE, **kwargs):
        super().__init__(**kwargs)
        self.pin_dir = pin_dir
        self.map_path = map_path or os.path.join(pin_dir, "maps", DEFAULT_MAP_NAME)
        self.xdp_object = xdp_object
        self.interface = interface
        self.batch_size = batch_size
        self._attached = False
        self._map_missing = False

    # ---------------- lifecycle ----------------
    def open(self) -> None:
        with self.lock:
            if self.read_only:
                self._open_read_only()
                return
            if self.xdp_object:
                self._load_and_attach()
            try:
                # fails with BackendUnavailable when nothing is pinned there
                self.execute(["bpftool", "-j", "map", "show", "pinned", self.map_path])
            except BackendUnavailable:
                self.close()
                raise
            logger.info("Using BPF map %s", self.map_path)

    def _open_read_only(self) -> None:
        try:
            self.execute(["bpftool", "-j", "map", "show", "pinned", self.map_path])
        except BackendUnavailable:
            if not self.xdp_object:
                raise
            # the map only appears once the object is loaded
            logger.info("BPF map %s is not pinned yet, reading it as empty", self.map_path)
            self._map_missing = True

    def _load_and_attach(self) -> None:
        prog_path = os.path.join(self.pin_dir, DEFAULT_PROG_NAME)
        self.execute(["bpftool", "prog", "loadall", self.xdp_object, self.pin_dir,
                      "type", "xdp", "pinmaps", os.path.join(self.pin_dir, "maps")])
        try:
            self.execute(["bpftool", "net", "attach", "xdp", "pinned", prog_path,
                          "dev", self.interface, "overwrite"])
        except BackendUnavailable:
            self._unpin()
            raise
        self._attached = True
        logger.info("Attached XDP program %s to %s", prog_path, self.interface)

    def _unpin(self) -> None:
        shutil.rmtree(self.pin_dir, ignore_errors=True)

    def close(self) -> None:
        with self.lock:
            if not self._attached:
                return
            try:
                self.execute(["bpftool", "net", "detach", "xdp", "dev", self.interface])
                logger.info("Detached XDP program from %s", self.interface)
            except BackendUnavailable as e:
                logger.error("Failed to detach XDP program from %s: %s", self.interface, e)
            self._unpin()
            self._attached = False

    # ---------------- map access ----------------
    def _dump(self) -> Dict[Prefix, Action]:
        if self._map_missing:
            return {}
        out = self.execute(["bpftool", "-j", "map", "dump", "pinned", self.map_path])
        try:
            return parse_dump(json.loads(out or "[]"))
        except ValueError as e:
            raise BackendUnavailable(f"unparseable bpftool output: {e}") from e

    def _update_line(self, prefix: Prefix, action: Action) -> str:
        return " ".join(["map", "update", "pinned", self.map_path, "key", "hex", *encode_key(prefix),
                         "value", "hex", *encode_value(action), "any"])

    def _delete_line(self, prefix: Prefix) -> str:
        return " ".join(["map", "delete", "pinned", self.map_path, "key", "hex", *encode_key(prefix)])

    def _batch(self, ops: List[Tuple[PolicyEntry, str]]) -> List[PolicyEntry]:
        """Run ``bpftool batch`` commands; on failure fall back to one call per entry."""
        failed = []
        for i in range(0, len(ops), self.batch_size):
            chunk = ops[i:i + self.batch_size]
            try:
                script = "\n".join(line for _, line in chunk) + "\n"
                self.execute(["bpftool", "batch", "file", "-"], input_text=script)
                continue
            except BackendUnavailable as e:
                logger.debug("bpftool batch failed, retrying one by one: %s", e)
            for entry, line in chunk:
                try:
                    self.execute(["bpftool", *line.split()])
                except BackendUnavailable as e:
                    logger.debug("bpftool %s failed: %s", line, e)
                    failed.append(entry)
        return failed

    # ---------------- contract ----------------
    def snapshot(self) -> Set[PolicyEntry]:
        with self.lock:
            return {PolicyEntry(p, a) for p, a in self._dump().items()}

    def apply_diff(self, to_add: Set[PolicyEntry], to_remove: Set[PolicyEntry]) -> None:
        # a prefix that only changes action is overwritten in place, never deleted
        self.check_writable()
        updated = {e.prefix for e in to_add}
        ops = [(e, self._update_line(e.prefix, e.action)) for e in sorted(to_add)]
        ops += [(e, self._delete_line(e.prefix)) for e in sorted(to_remove) if e.prefix not in updated]
        with self.lock:
            self.execute(["bpftool", "-j", "map", "show", "pinned", self.map_path])
            failed = self._batch(ops)
        if failed:
            raise PartialApplyFailure(failed)

    def reset(self) -> None:
        self.check_writable()
        with self.lock:
            live = self._dump()
            failed = self._batch([(PolicyEntry(p, a), self._delete_line(p)) for p, a in live.items()])
        if failed:
            raise BackendUnavailable(f"could not clear {len(failed)} map entries")
        logger.info("Cleared %d entries from %s", len(live), self.map_path)

    def read_counts(self) -> Dict[Tuple[str, Action], CountryCounters]:
        with self.lock:
            live = self._dump()
        counts = {}
        for action in Action:
            n = sum(1 for a in live.values() if a is action)
            if n:
                counts[(ALL_COUNTRIES, action)] = CountryCounters(action, n)
        return counts
