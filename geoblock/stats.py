"""Read-only polling of backend counters."""

import logging
from typing import Dict, Optional, Tuple

from .errors import BackendUnavailable
from .metrics import ObservabilityHub
from .models import Action, CountryCounters
from .stores.base import EnforcementStore

logger = logging.getLogger(__name__)


class StatisticsReader:
    """Poll the store's counters and publish them to the hub.

    A failed read leaves the previously published values in place.
    """

    def __init__(self, store: EnforcementStore, hub: ObservabilityHub):
        self.store = store
        self.hub = hub

    def read_counts(self) -> Dict[Tuple[str, Action], CountryCounters]:
        """Raises BackendUnavailable."""
        return self.store.read_counts()

    def poll(self) -> Optional[Dict[Tuple[str, Action], CountryCounters]]:
        try:
            counts = self.read_counts()
        except BackendUnavailable as e:
            logger.warning("Failed to read statistics, keeping previous values: %s", e)
            return None
        self.hub.record_counts(counts)
        total = sum(c.entries for c in counts.values())
        logger.info("Current entries: %d", total)
        for (country, action), c in sorted(counts.items()):
            logger.debug("  %s %s: entries=%d packets=%d bytes=%d",
                         country, action.value, c.entries, c.packets, c.bytes)
        return counts
