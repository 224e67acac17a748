import json
import struct

import pytest

from conftest import FakeRunner, fail
from geoblock.errors import BackendUnavailable, PartialApplyFailure
from geoblock.models import Action, CountryCounters, PolicyEntry, Prefix
from geoblock.stores.bpf import BpfMapStore, decode_key, encode_key, parse_dump

MAP = "/sys/fs/bpf/test/ip_map"
US = Prefix.parse("1.2.0.0/16")
CN = Prefix.parse("36.0.0.0/10")


def dump_item(prefix, value):
    key = struct.pack("=I", prefix.length) + struct.pack("!I", prefix.address)
    return {"key": [f"0x{b:02x}" for b in key], "value": [f"0x{value:02x}"]}


class Bpftool:
    def __init__(self, items=(), reject=()):
        self.items = list(items)
        self.reject = reject
        self.runner = FakeRunner(self.respond)

    def respond(self, cmd, input):
        if cmd[1:4] == ["-j", "map", "dump"]:
            return json.dumps(self.items)
        text = input if input is not None else " ".join(cmd)
        if any(bad in text for bad in self.reject):
            fail(cmd, "Error: update failed")
        return "{}"

    @property
    def commands(self):
        return [cmd for cmd, _ in self.runner.calls]


def make_store(items=(), reject=()):
    tool = Bpftool(items, reject)
    return BpfMapStore(map_path=MAP, run=tool.runner), tool


def test_key_layout():
    hexed = encode_key(US)
    assert hexed[4:] == ["01", "02", "00", "00"]  # address in network order
    assert struct.unpack("=I", bytes(int(b, 16) for b in hexed[:4])) == (16,)
    assert decode_key(["0x" + b for b in hexed]) == US


def test_parse_dump_skips_garbage():
    doc = [dump_item(US, 1), dump_item(CN, 0), {"key": ["0x01"], "value": ["0x01"]}, {"nokey": 1}]
    assert parse_dump(doc) == {US: Action.ALLOW, CN: Action.DENY}


def test_snapshot_is_merged_layout():
    store, _ = make_store([dump_item(US, 0)])
    assert store.snapshot() == {PolicyEntry(US, Action.DENY)}


def test_apply_diff_batches_updates_and_deletes():
    store, tool = make_store()
    store.apply_diff({PolicyEntry(US, Action.DENY)}, {PolicyEntry(CN, Action.DENY)})
    batch_cmd, script = tool.runner.calls[-1]
    assert batch_cmd == ["bpftool", "batch", "file", "-"]
    lines = script.splitlines()
    assert lines[0] == f"map update pinned {MAP} key hex {' '.join(encode_key(US))} value hex 00 any"
    assert lines[1] == f"map delete pinned {MAP} key hex {' '.join(encode_key(CN))}"


def test_action_switch_is_updated_in_place():
    store, tool = make_store([dump_item(US, 1)])
    store.apply_diff({PolicyEntry(US, Action.DENY)}, {PolicyEntry(US, Action.ALLOW)})
    script = tool.runner.calls[-1][1]
    assert "map delete" not in script
    assert script.count("map update") == 1


def test_batch_failure_falls_back_per_entry():
    bad = " ".join(encode_key(CN))
    store, tool = make_store(reject=(bad,))
    with pytest.raises(PartialApplyFailure) as exc:
        store.apply_diff({PolicyEntry(US, Action.DENY), PolicyEntry(CN, Action.DENY)}, set())
    assert exc.value.failed == [PolicyEntry(CN, Action.DENY)]
    singles = [c for c in tool.commands if c[1:3] == ["map", "update"]]
    assert len(singles) == 2


def test_missing_map_is_backend_unavailable():
    store = BpfMapStore(map_path=MAP, run=FakeRunner(lambda cmd, input: fail(cmd, "No such file")))
    with pytest.raises(BackendUnavailable):
        store.open()
    with pytest.raises(BackendUnavailable):
        store.snapshot()


def test_reset_deletes_every_key():
    store, tool = make_store([dump_item(US, 1), dump_item(CN, 1)])
    store.reset()
    script = tool.runner.calls[-1][1]
    assert script.count("map delete") == 2


def test_read_counts_entry_count_only():
    store, _ = make_store([dump_item(US, 0), dump_item(CN, 0)])
    assert store.read_counts() == {("all", Action.DENY): CountryCounters(Action.DENY, 2, 0, 0)}


def test_read_counts_keeps_both_actions_apart():
    store, _ = make_store([dump_item(US, 1), dump_item(CN, 0)])
    assert store.read_counts() == {
        ("all", Action.ALLOW): CountryCounters(Action.ALLOW, 1),
        ("all", Action.DENY): CountryCounters(Action.DENY, 1),
    }


def test_open_loads_and_attaches_then_close_detaches(tmp_path):
    tool = Bpftool()
    pin_dir = str(tmp_path / "pins")
    store = BpfMapStore(xdp_object="xdp_filter.o", interface="eth0", pin_dir=pin_dir, run=tool.runner)
    with store:
        assert store.map_path == f"{pin_dir}/maps/ip_map"
    cmds = tool.commands
    assert cmds[0][:4] == ["bpftool", "prog", "loadall", "xdp_filter.o"]
    assert cmds[1][:5] == ["bpftool", "net", "attach", "xdp", "pinned"]
    assert cmds[-1] == ["bpftool", "net", "detach", "xdp", "dev", "eth0"]


def test_failed_attach_unpins(tmp_path):
    pin_dir = tmp_path / "pins"
    pin_dir.mkdir()

    def respond(cmd, input):
        if cmd[1:3] == ["net", "attach"]:
            fail(cmd, "Device busy")
        return ""

    store = BpfMapStore(xdp_object="xdp_filter.o", interface="eth0", pin_dir=str(pin_dir),
                        run=FakeRunner(respond))
    with pytest.raises(BackendUnavailable):
        store.open()
    assert not pin_dir.exists()


def test_failed_map_check_after_attach_detaches(tmp_path):
    pin_dir = tmp_path / "pins"
    pin_dir.mkdir()

    def respond(cmd, input):
        if cmd[1:4] == ["-j", "map", "show"]:
            fail(cmd, "No such file or directory")
        return ""

    runner = FakeRunner(respond)
    store = BpfMapStore(map_path=str(tmp_path / "custom_map"), xdp_object="xdp_filter.o", interface="eth0",
                        pin_dir=str(pin_dir), run=runner)
    with pytest.raises(BackendUnavailable):
        with store:
            pass
    assert [cmd for cmd, _ in runner.calls][-1] == ["bpftool", "net", "detach", "xdp", "dev", "eth0"]
    assert not pin_dir.exists()


def test_read_only_open_never_loads_or_writes(tmp_path):
    tool = Bpftool([dump_item(US, 0)])
    store = BpfMapStore(map_path=MAP, xdp_object="xdp_filter.o", interface="eth0",
                        pin_dir=str(tmp_path / "pins"), read_only=True, run=tool.runner)
    with store:
        assert store.snapshot() == {PolicyEntry(US, Action.DENY)}
        with pytest.raises(BackendUnavailable):
            store.apply_diff({PolicyEntry(CN, Action.DENY)}, set())
        with pytest.raises(BackendUnavailable):
            store.reset()
    assert all(cmd[1] == "-j" for cmd in tool.commands)


def test_read_only_open_before_first_load_reads_empty(tmp_path):
    def respond(cmd, input):
        fail(cmd, "No such file or directory")

    runner = FakeRunner(respond)
    store = BpfMapStore(xdp_object="xdp_filter.o", interface="eth0", pin_dir=str(tmp_path / "pins"),
                        read_only=True, run=runner)
    with store:
        assert store.snapshot() == set()
        assert store.read_counts() == {}
    assert len(runner.calls) == 1
