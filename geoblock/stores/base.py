"""Abstract enforcement store shared by the nftables and kernel-map backends."""

import abc
import logging
import subprocess
import threading
from typing import Callable, Dict, List, Set, Tuple

from ..errors import BackendUnavailable
from ..models import Action, CountryCounters, Layout, PolicyEntry

DEFAULT_COMMAND_TIMEOUT = 30

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


class EnforcementStore(abc.ABC):
    """Read/write access to the live enforcement state.

    Implementations serialize their own operations with ``self.lock``;
    the statistics reader and the reconciliation engine share one store.
    A ``read_only`` store never changes the backend,
    not even in ``open()``.
    """

    layout: Layout = Layout.MERGED

    def __init__(self, run: Runner = subprocess.run, timeout: int = DEFAULT_COMMAND_TIMEOUT,
                 read_only: bool = False):
        self._run = run
        self.timeout = timeout
        self.read_only = read_only
        self.lock = threading.RLock()

    # ---------------- lifecycle ----------------
    def open(self) -> None:
        """Acquire backend resources. Default: nothing to do."""

    def close(self) -> None:
        """Release backend resources. Default: nothing to do."""

    def __enter__(self) -> "EnforcementStore":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------------- contract ----------------
    @abc.abstractmethod
    def snapshot(self) -> Set[PolicyEntry]:
        """Full read of the managed live entries."""

    @abc.abstractmethod
    def apply_diff(self, to_add: Set[PolicyEntry], to_remove: Set[PolicyEntry]) -> None:
        """Add ``to_add`` then remove ``to_remove``.

        Raises:
            BackendUnavailable: nothing could be applied.
            PartialApplyFailure: some entries were rejected, the rest applied.
        """

    @abc.abstractmethod
    def reset(self) -> None:
        """Remove every entry and rule this system installed."""

    @abc.abstractmethod
    def read_counts(self) -> Dict[Tuple[str, Action], CountryCounters]:
        """Entry and traffic counters keyed by ``(country, action)``. Never mutates state.

        ``country`` is ``"all"`` for sets that do not keep countries apart.
        """

    # ---------------- helpers ----------------
    def check_writable(self) -> None:
        if self.read_only:
            raise BackendUnavailable(f"{type(self).__name__} was opened read-only")

    def execute(self, cmd: List[str], input_text: str = None) -> str:
        """Run a backend command and return its stdout.

        Raises:
            BackendUnavailable: the tool is missing, timed out or failed.
        """
        try:
            res = self._run(cmd, input=input_text, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                            text=True, check=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise BackendUnavailable(f"{cmd[0]} not found") from e
        except subprocess.TimeoutExpired as e:
            raise BackendUnavailable(f"{' '.join(cmd)} timed out after {self.timeout}s") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise BackendUnavailable(f"{' '.join(cmd)} failed ({e.returncode}): {stderr}") from e
        return res.stdout or ""
