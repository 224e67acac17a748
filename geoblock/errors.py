"""Error taxonomy shared by the feed, store and engine layers."""

from typing import Iterable, List, Optional


class GeoblockError(Exception):
    """Base class for every error raised by geoblock."""


class ConfigError(GeoblockError):
    """Invalid or contradictory configuration. Always fatal."""


class BackendUnavailable(GeoblockError):
    """The enforcement backend could not be read or written at all."""


class FeedFetchError(GeoblockError):
    """A single country's feed could not be downloaded."""

    def __init__(self, country: str, cause: object):
        super().__init__(f"feed for {country!r} unavailable: {cause}")
        self.country = country
        self.cause = cause


class PartialApplyFailure(GeoblockError):
    """Some entries of an apply batch were rejected by the backend.

    The rest of the batch was applied. ``failed`` holds the rejected
    ``PolicyEntry`` values so the caller can log or retry them.
    """

    def __init__(self, failed: Iterable, message: Optional[str] = None):
        self.failed: List = list(failed)
        super().__init__(message or f"{len(self.failed)} entries failed to apply")
