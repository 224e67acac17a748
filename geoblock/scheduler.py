"""Periodic reconciliation and statistics loops."""

import logging
import threading
from typing import Callable, List

from .engine import Reconciler
from .errors import GeoblockError
from .stats import StatisticsReader

logger = logging.getLogger(__name__)


class Scheduler:
    """Two timer loops on their own threads: reconcile and poll statistics.

    Each loop runs its job synchronously, so a slow pass only delays the next
    tick; passes never overlap. ``stop()`` stops scheduling new ticks and lets
    a running pass finish.
    """

    def __init__(self, engine: Reconciler, stats: StatisticsReader,
                 refresh_interval: float, stats_interval: float):
        self.engine = engine
        self.stats = stats
        self.refresh_interval = refresh_interval
        self.stats_interval = stats_interval
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def _loop(self, name: str, interval: float, job: Callable[[], object]) -> None:
        while not self._stop.wait(interval):
            try:
                job()
            except GeoblockError as e:
                logger.error("%s failed, retrying in %ss: %s", name, interval, e)
            except Exception:
                logger.exception("Unexpected error in %s, retrying in %ss", name, interval)

    def start(self) -> None:
        for name, interval, job in (
            ("reconcile", self.refresh_interval, self.engine.run_pass),
            ("stats", self.stats_interval, self.stats.poll),
        ):
            t = threading.Thread(target=self._loop, args=(name, interval, job),
                                 name=f"geoblock-{name}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("Scheduled reconciliation every %ss, statistics every %ss",
                    self.refresh_interval, self.stats_interval)

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def wait(self) -> None:
        """Block until ``stop()`` is called, then join the loops."""
        self._stop.wait()
        for t in self._threads:
            t.join()
