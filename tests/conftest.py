import subprocess

import pytest

from geoblock.config import Config
from geoblock.errors import BackendUnavailable, FeedFetchError, PartialApplyFailure
from geoblock.metrics import ObservabilityHub
from geoblock.models import Layout, Mode
from geoblock.stores.base import EnforcementStore


class FakeStore(EnforcementStore):
    """In-memory store that records every apply_diff call."""

    def __init__(self, layout=Layout.PER_COUNTRY, entries=()):
        super().__init__()
        self.layout = layout
        self.entries = set(entries)
        self.calls = []
        self.reject = set()
        self.unavailable = False
        self.resets = 0
        self.opened = False
        self.closed = False
        self.counts = {}

    def _check(self):
        if self.unavailable:
            raise BackendUnavailable("store is down")

    def open(self):
        self._check()
        self.opened = True

    def close(self):
        self.closed = True

    def snapshot(self):
        self._check()
        return set(self.entries)

    def apply_diff(self, to_add, to_remove):
        self._check()
        self.calls.append((set(to_add), set(to_remove)))
        failed = [e for e in set(to_add) | set(to_remove) if e in self.reject]
        self.entries |= {e for e in to_add if e not in self.reject}
        self.entries -= {e for e in to_remove if e not in self.reject}
        if failed:
            raise PartialApplyFailure(failed)

    def reset(self):
        self._check()
        self.resets += 1
        self.entries.clear()

    def read_counts(self):
        self._check()
        return dict(self.counts)


class FakeSource:
    """Feed source backed by a dict; missing countries behave like HTTP 404,
    exception values are raised as-is."""

    def __init__(self, feeds):
        self.feeds = dict(feeds)
        self.fetched = []

    def fetch(self, country):
        self.fetched.append(country)
        feed = self.feeds.get(country)
        if feed is None:
            raise FeedFetchError(country, "HTTP 404")
        if isinstance(feed, Exception):
            raise feed
        return feed


class FakeRunner:
    """Stand-in for subprocess.run: ``respond(cmd, input)`` returns stdout or raises."""

    def __init__(self, respond=None):
        self.respond = respond or (lambda cmd, input: "")
        self.calls = []

    def __call__(self, cmd, input=None, **kwargs):
        self.calls.append((list(cmd), input))
        out = self.respond(list(cmd), input)
        return subprocess.CompletedProcess(cmd, 0, stdout=out, stderr="")

    def scripts(self):
        return [inp for cmd, inp in self.calls if inp is not None]


def fail(cmd, stderr="Error: Could not process rule"):
    raise subprocess.CalledProcessError(1, cmd, output="", stderr=stderr)


def make_config(mode=Mode.DENY, countries=("us",), **kwargs):
    return Config(mode=mode, countries=tuple(countries), **kwargs)


@pytest.fixture
def hub():
    return ObservabilityHub()
