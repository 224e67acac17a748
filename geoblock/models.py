"""Value types for prefixes, policy entries and backend counters."""

import enum
import ipaddress
import re
from typing import NamedTuple, Optional

from .errors import ConfigError

COUNTRY_CODE = re.compile(r'^[a-z]{2}$')

# Grouping key used for counters when the layout does not keep countries apart
ALL_COUNTRIES = "all"


class Action(str, enum.Enum):
    ALLOW = "allow"
    DENY = "deny"


class Mode(str, enum.Enum):
    ALLOW = "allow"
    DENY = "deny"

    @property
    def action(self) -> Action:
        return Action.ALLOW if self is Mode.ALLOW else Action.DENY


class Layout(str, enum.Enum):
    PER_COUNTRY = "per-country"
    MERGED = "merged"


class Prefix(NamedTuple):
    """IPv4 CIDR block as ``(network address as int, prefix length)``."""
    address: int
    length: int

    @classmethod
    def from_network(cls, net: ipaddress.IPv4Network) -> "Prefix":
        return cls(int(net.network_address), net.prefixlen)

    @classmethod
    def parse(cls, text: str) -> "Prefix":
        """Parse ``'a.b.c.d/len'`` or a bare address; host bits are masked off."""
        return cls.from_network(ipaddress.IPv4Network(text.strip(), strict=False))

    def __str__(self) -> str:
        return f"{ipaddress.IPv4Address(self.address)}/{self.length}"


class PolicyEntry(NamedTuple):
    """One enforced prefix. ``country`` is None in the merged layout."""
    prefix: Prefix
    action: Action
    country: Optional[str] = None

    def __str__(self) -> str:
        where = f"[{self.country}]" if self.country else ""
        return f"{self.prefix}->{self.action.value}{where}"


class CountryCounters(NamedTuple):
    action: Action
    entries: int
    packets: int = 0
    bytes: int = 0


def normalize_country(code: str) -> str:
    """Lowercase and validate a two-letter country code."""
    cc = code.strip().lower()
    if not COUNTRY_CODE.match(cc):
        raise ConfigError(f"Invalid country code: {code!r}")
    return cc
