import pytest

from conftest import FakeSource, FakeStore, make_config
from geoblock.engine import Reconciler, State, compute_diff
from geoblock.errors import BackendUnavailable, FeedFetchError
from geoblock.models import Action, Layout, Mode, PolicyEntry, Prefix

A1 = Prefix.parse("1.0.0.0/24")
A2 = Prefix.parse("1.0.1.0/24")
B1 = Prefix.parse("2.0.0.0/16")
C1 = Prefix.parse("3.0.0.0/8")
US = Prefix.parse("1.2.0.0/16")
P8 = Prefix.parse("10.0.0.0/8")
P11 = Prefix.parse("11.0.0.0/8")


def feed(*prefixes):
    return "".join(f"{p}\n" for p in prefixes)


def entries(action, country, *prefixes):
    return {PolicyEntry(p, action, country) for p in prefixes}


def make_engine(feeds, countries, mode=Mode.DENY, store=None, hub=None, **kwargs):
    store = store if store is not None else FakeStore()
    config = make_config(mode=mode, countries=countries, **kwargs)
    return Reconciler(config, store, FakeSource(feeds), hub), store


def test_live_state_equals_desired_after_pass():
    engine, store = make_engine({"aa": feed(A1, A2), "cc": feed(C1)}, ["aa", "cc"])
    result = engine.run_pass()
    assert store.entries == entries(Action.DENY, "aa", A1, A2) | entries(Action.DENY, "cc", C1)
    assert result.fetched == ("aa", "cc")
    assert result.skipped == ()
    assert engine.state is State.IDLE


def test_second_pass_is_a_noop():
    engine, store = make_engine({"aa": feed(A1, A2)}, ["aa"])
    engine.run_pass()
    result = engine.run_pass()
    assert result.to_add == frozenset()
    assert result.to_remove == frozenset()
    assert len(store.calls) == 1


def test_failed_country_is_isolated():
    engine, store = make_engine({"aa": feed(A1), "cc": feed(C1)}, ["aa", "bb", "cc"])
    result = engine.run_pass()
    assert result.skipped == ("bb",)
    assert store.entries == entries(Action.DENY, "aa", A1) | entries(Action.DENY, "cc", C1)
    assert not any(e.country == "bb" for e in store.entries)


def test_diff_only_touches_new_prefixes():
    store = FakeStore(entries=entries(Action.DENY, "aa", P8))
    engine, _ = make_engine({"aa": feed(P8, P11)}, ["aa"], store=store)
    engine.run_pass()
    assert store.calls == [(entries(Action.DENY, "aa", P11), set())]


def test_mode_switch_replaces_action():
    store = FakeStore()
    allow, _ = make_engine({"us": feed(US)}, ["us"], mode=Mode.ALLOW, store=store)
    allow.run_pass()
    deny, _ = make_engine({"us": feed(US)}, ["us"], mode=Mode.DENY, store=store)
    result = deny.run_pass()
    assert result.to_remove == frozenset(entries(Action.ALLOW, "us", US))
    assert result.to_add == frozenset(entries(Action.DENY, "us", US))
    assert store.entries == entries(Action.DENY, "us", US)


def test_mode_switch_merged_layout():
    store = FakeStore(layout=Layout.MERGED, entries={PolicyEntry(US, Action.ALLOW)})
    engine, _ = make_engine({"us": feed(US)}, ["us"], store=store)
    result = engine.run_pass()
    assert result.to_remove == frozenset({PolicyEntry(US, Action.ALLOW)})
    assert result.to_add == frozenset({PolicyEntry(US, Action.DENY)})


def test_merged_layout_shared_prefix_is_one_entry():
    store = FakeStore(layout=Layout.MERGED)
    engine, _ = make_engine({"aa": feed(A1, US), "cc": feed(US)}, ["aa", "cc"], store=store)
    engine.run_pass()
    assert store.entries == {PolicyEntry(A1, Action.DENY), PolicyEntry(US, Action.DENY)}


def test_unconfigured_country_entries_are_removed():
    stale = entries(Action.DENY, "zz", B1)
    store = FakeStore(entries=stale)
    engine, _ = make_engine({"aa": feed(A1)}, ["aa"], store=store)
    result = engine.run_pass()
    assert result.to_remove == frozenset(stale)
    assert store.entries == entries(Action.DENY, "aa", A1)


def test_failed_country_entries_are_removed():
    engine, store = make_engine({"aa": feed(A1), "bb": feed(B1), "cc": feed(C1)}, ["aa", "bb", "cc"])
    engine.run_pass()
    engine.source.feeds["bb"] = None
    result = engine.run_pass()
    assert result.skipped == ("bb",)
    assert result.to_remove == frozenset(entries(Action.DENY, "bb", B1))
    assert store.entries == entries(Action.DENY, "aa", A1) | entries(Action.DENY, "cc", C1)


def test_failed_country_live_entries_removed_after_restart():
    store = FakeStore(entries=entries(Action.DENY, "bb", B1))
    engine, _ = make_engine({"aa": feed(A1)}, ["aa", "bb"], store=store)
    engine.run_pass()
    assert store.entries == entries(Action.DENY, "aa", A1)


def test_unexpected_fetch_error_only_skips_that_country(hub):
    engine, store = make_engine({"aa": feed(A1), "bb": RuntimeError("truncated"), "cc": feed(C1)},
                                ["aa", "bb", "cc"], hub=hub)
    result = engine.run_pass()
    assert result.skipped == ("bb",)
    assert engine.state is State.IDLE
    assert store.entries == entries(Action.DENY, "aa", A1) | entries(Action.DENY, "cc", C1)
    assert hub.registry.get_sample_value("geoblock_reconcile_passes_total", {"result": "success"}) == 1.0



def test_empty_feed_counts_as_failure():
    engine, store = make_engine({"aa": feed(A1), "bb": "<html>oops</html>\n"}, ["aa", "bb"])
    result = engine.run_pass()
    assert result.skipped == ("bb",)


def test_initial_pass_fails_when_every_feed_fails():
    engine, store = make_engine({}, ["aa", "bb"])
    with pytest.raises(FeedFetchError):
        engine.initial_pass()
    assert engine.state is State.FAILED
    assert store.calls == []


def test_periodic_pass_tolerates_every_feed_failing():
    engine, store = make_engine({"aa": feed(A1)}, ["aa"])
    engine.initial_pass()
    engine.source.feeds.clear()
    calls = list(store.calls)
    result = engine.run_pass()
    assert result.fetched == ()
    assert result.applied is False
    assert engine.state is State.IDLE
    assert store.calls == calls
    assert store.entries == entries(Action.DENY, "aa", A1)


def test_backend_unavailable_marks_failed_then_recovers():
    engine, store = make_engine({"aa": feed(A1)}, ["aa"])
    store.unavailable = True
    with pytest.raises(BackendUnavailable):
        engine.run_pass()
    assert engine.state is State.FAILED
    store.unavailable = False
    engine.run_pass()
    assert engine.state is State.IDLE
    assert store.entries == entries(Action.DENY, "aa", A1)


def test_partial_apply_failure_is_not_fatal(hub):
    engine, store = make_engine({"aa": feed(A1, A2)}, ["aa"], hub=hub)
    bad = PolicyEntry(A2, Action.DENY, "aa")
    store.reject = {bad}
    result = engine.run_pass()
    assert result.failed == (bad,)
    assert engine.state is State.IDLE
    assert store.entries == entries(Action.DENY, "aa", A1)
    # the rejected entry is retried on the next pass
    store.reject = set()
    assert engine.run_pass().to_add == frozenset({bad})


def test_dry_run_does_not_apply():
    engine, store = make_engine({"aa": feed(A1)}, ["aa"], dry_run=True)
    result = engine.run_pass()
    assert result.applied is False
    assert result.to_add == frozenset(entries(Action.DENY, "aa", A1))
    assert store.calls == []


def test_reset_on_start_clears_before_full_apply():
    store = FakeStore(entries=entries(Action.DENY, "aa", A1))
    engine, _ = make_engine({"aa": feed(A1)}, ["aa"], store=store, reset_on_start=True)
    result = engine.initial_pass()
    assert store.resets == 1
    assert result.to_add == frozenset(entries(Action.DENY, "aa", A1))
    engine.run_pass()
    assert store.resets == 1


def test_publishes_country_status(hub):
    engine, _ = make_engine({"aa": feed(A1)}, ["aa", "bb"], hub=hub)
    engine.run_pass()
    assert hub.is_enforced("aa", Action.DENY)
    assert not hub.is_enforced("aa", Action.ALLOW)
    assert not hub.is_enforced("bb", Action.DENY)
    assert hub.last_update("aa") is not None
    assert hub.last_update("bb") is None


def test_compute_diff():
    live = entries(Action.DENY, "aa", A1, A2)
    desired = entries(Action.DENY, "aa", A2, C1)
    assert compute_diff(desired, live) == (entries(Action.DENY, "aa", C1), entries(Action.DENY, "aa", A1))
