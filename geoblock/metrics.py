"""
Prometheus metrics for the reconciliation engine and statistics reader.

One ObservabilityHub is created at startup and injected where needed; it owns
its registry, so nothing here is process-global.
"""
import logging
import threading
from typing import Dict, Iterator, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, start_http_server
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from .models import Action, CountryCounters

logger = logging.getLogger(__name__)


class ObservabilityHub:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()
        self._counts: Dict[Tuple[str, Action], CountryCounters] = {}
        self._last_update: Dict[str, float] = {}
        self._enforced: Dict[str, Dict[Action, bool]] = {}
        self.passes = Counter('geoblock_reconcile_passes', 'Reconciliation passes by result',
                              ['result'], registry=self.registry)
        self.registry.register(_HubCollector(self))

    # ---------------- writers ----------------
    def record_counts(self, counts: Dict[Tuple[str, Action], CountryCounters]) -> None:
        """Replace the exposed backend counters with a fresh successful read."""
        with self._lock:
            self._counts = dict(counts)

    def record_country(self, country: str, action: Action, enforced: bool,
                       timestamp: Optional[float] = None) -> None:
        """Mark ``country`` as enforced (or not); ``timestamp`` marks a fresh apply."""
        with self._lock:
            self._enforced[country] = {a: (enforced and a is action) for a in Action}
            if timestamp is not None:
                self._last_update[country] = timestamp

    def record_pass(self, result: str) -> None:
        self.passes.labels(result=result).inc()

    # ---------------- readers ----------------
    def counts(self) -> Dict[Tuple[str, Action], CountryCounters]:
        with self._lock:
            return dict(self._counts)

    def last_update(self, country: str) -> Optional[float]:
        with self._lock:
            return self._last_update.get(country)

    def is_enforced(self, country: str, action: Action) -> bool:
        with self._lock:
            return self._enforced.get(country, {}).get(action, False)

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        start_http_server(port, addr=addr, registry=self.registry)
        logger.info("Serving metrics on %s:%d", addr, port)


class _HubCollector:
    """Renders the hub's current state on every scrape."""

    def __init__(self, hub: ObservabilityHub):
        self.hub = hub

    def collect(self) -> Iterator:
        hub = self.hub
        with hub._lock:
            counts = dict(hub._counts)
            last_update = dict(hub._last_update)
            enforced = {cc: dict(v) for cc, v in hub._enforced.items()}

        packets = CounterMetricFamily('geoblock_packets', 'Packets matched per country set',
                                      labels=['country', 'action'])
        nbytes = CounterMetricFamily('geoblock_bytes', 'Bytes matched per country set',
                                     labels=['country', 'action'])
        entries = GaugeMetricFamily('geoblock_entries', 'Live prefixes per country set',
                                    labels=['country', 'action'])
        for (country, action), c in sorted(counts.items()):
            labels = [country, action.value]
            packets.add_metric(labels, c.packets)
            nbytes.add_metric(labels, c.bytes)
            entries.add_metric(labels, c.entries)

        updated = GaugeMetricFamily('geoblock_last_update_timestamp_seconds',
                                    'Time of the last successful feed apply', labels=['country'])
        for country, ts in sorted(last_update.items()):
            updated.add_metric([country], ts)

        status = GaugeMetricFamily('geoblock_country_enforced',
                                   'Whether a country is currently allowed/denied (1) or not (0)',
                                   labels=['country', 'action'])
        for country, by_action in sorted(enforced.items()):
            for action, on in by_action.items():
                status.add_metric([country, action.value], 1.0 if on else 0.0)

        yield from (packets, nbytes, entries, updated, status)
