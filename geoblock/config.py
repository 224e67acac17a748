"""Configuration: shell-style conf file, command-line overrides, validation."""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConfigError
from .feeds import DEFAULT_FEED_URL, DEFAULT_TIMEOUT
from .models import Layout, Mode, normalize_country
from .stores.nftables import DEFAULT_TABLE

DEFAULT_CONF_PATH = "/etc/geoblock/geoblock.conf"
DEFAULT_REFRESH_INTERVAL = 3600.0
DEFAULT_STATS_INTERVAL = 10.0
BACKENDS = ("nftables", "bpf")

DURATION = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$')
DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}
TABLE_NAME = re.compile(r'^[A-Za-z0-9_-]+$')


@dataclass(frozen=True)
class Config:
    mode: Mode
    countries: Tuple[str, ...]
    refresh_interval: float = DEFAULT_REFRESH_INTERVAL
    stats_interval: float = DEFAULT_STATS_INTERVAL
    backend: str = "nftables"
    layout: Layout = Layout.PER_COUNTRY
    nft_table: str = DEFAULT_TABLE
    bpf_map_path: Optional[str] = None
    xdp_object: Optional[str] = None
    interface: Optional[str] = None
    feed_url: str = DEFAULT_FEED_URL
    timeout: int = DEFAULT_TIMEOUT
    metrics_port: Optional[int] = None
    metrics_addr: str = "0.0.0.0"
    reset_on_start: bool = False
    dry_run: bool = False


def parse_duration(value: Any) -> float:
    """Seconds from ``3600``, ``"90s"``, ``"30m"``, ``"1h"`` or ``"1d"``."""
    if isinstance(value, (int, float)):
        return float(value)
    m = DURATION.match(str(value))
    if not m:
        raise ConfigError(f"Invalid duration: {value!r}")
    return float(m.group(1)) * DURATION_UNITS[m.group(2)]


def split_countries(value: Any) -> List[str]:
    if isinstance(value, str):
        return [c for c in (p.strip() for p in value.split(",")) if c]
    return list(value or [])


def default_conf() -> Dict[str, Any]:
    return {
        "MODE": None,
        "COUNTRIES": [],
        "REFRESH_INTERVAL": DEFAULT_REFRESH_INTERVAL,
        "STATS_INTERVAL": DEFAULT_STATS_INTERVAL,
        "BACKEND": "nftables",
        "LAYOUT": None,
        "NFT_TABLE": DEFAULT_TABLE,
        "BPF_MAP_PATH": None,
        "XDP_OBJECT": None,
        "INTERFACE": None,
        "FEED_URL": DEFAULT_FEED_URL,
        "TIMEOUT": DEFAULT_TIMEOUT,
        "METRICS_PORT": None,
        "METRICS_ADDR": "0.0.0.0",
        "RESET_ON_START": False,
        "DRY_RUN": False,
    }


def load_conf(path: Optional[str]) -> Dict[str, Any]:
    """
    Recognized:
      MODE=allow|deny
      COUNTRIES=( "cn" "ru" )  or  COUNTRIES="cn,ru"
      REFRESH_INTERVAL=, STATS_INTERVAL= (seconds, or 30m / 1h / 1d)
      BACKEND=nftables|bpf, LAYOUT=per-country|merged
      NFT_TABLE=, BPF_MAP_PATH=, XDP_OBJECT=, INTERFACE=
      FEED_URL= (must contain {country}), TIMEOUT=
      METRICS_PORT=, METRICS_ADDR=
      RESET_ON_START= (yes/no)
    """
    cfg = default_conf()
    if not path:
        return cfg
    try:
        with open(path, "r", encoding="utf-8", errors="ignore") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    m = re.search(r'^\s*COUNTRIES\s*=\s*\((.*?)\)', text, re.S | re.M)
    if m:
        for line in m.group(1).split('\n'):
            line = line.split('#')[0]
            for a, b, c in re.findall(r'"([^"]+)"|\'([^\']+)\'|([A-Za-z]{2})', line):
                cfg["COUNTRIES"].append(a or b or c)
    else:
        m = re.search(r'^\s*COUNTRIES\s*=\s*["\']?([A-Za-z, ]*)["\']?\s*$', text, re.M)
        if m:
            cfg["COUNTRIES"] = split_countries(m.group(1))

    for k in ("MODE", "REFRESH_INTERVAL", "STATS_INTERVAL", "BACKEND", "LAYOUT", "NFT_TABLE",
              "BPF_MAP_PATH", "XDP_OBJECT", "INTERFACE", "FEED_URL", "METRICS_ADDR"):
        m = re.search(r'^\s*%s\s*=\s*["\']?([^"\'\s#]+)["\']?\s*(?:#.*)?$' % k, text, re.M)
        if m:
            cfg[k] = m.group(1)

    for k in ("TIMEOUT", "METRICS_PORT"):
        m = re.search(r'^\s*%s\s*=\s*([0-9]+)\s*$' % k, text, re.M)
        if m:
            cfg[k] = int(m.group(1))

    m = re.search(r'^\s*RESET_ON_START\s*=\s*(yes|no)\s*$', text, re.M | re.I)
    if m:
        cfg["RESET_ON_START"] = m.group(1).lower() == "yes"

    return cfg


def build_config(cfg: Dict[str, Any]) -> Config:
    """Turn a raw conf dict into a validated, immutable Config.

    Raises:
        ConfigError: for anything that must stop the process before startup.
    """
    mode = cfg.get("MODE")
    if not mode:
        raise ConfigError("Must specify either allow or deny mode")
    try:
        mode = Mode(str(mode).lower())
    except ValueError as e:
        raise ConfigError(f"Invalid MODE: {mode!r} (expected allow or deny)") from e

    countries: List[str] = []
    for code in split_countries(cfg.get("COUNTRIES")):
        cc = normalize_country(code)
        if cc not in countries:
            countries.append(cc)
    if not countries:
        raise ConfigError("Must specify countries")

    refresh = parse_duration(cfg.get("REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL))
    stats = parse_duration(cfg.get("STATS_INTERVAL", DEFAULT_STATS_INTERVAL))
    if refresh <= 0 or stats <= 0:
        raise ConfigError("Intervals must be positive")

    backend = str(cfg.get("BACKEND") or "nftables").lower()
    if backend not in BACKENDS:
        raise ConfigError(f"Unknown BACKEND: {backend!r} (expected one of {', '.join(BACKENDS)})")

    layout_value = cfg.get("LAYOUT")
    if layout_value:
        try:
            layout = Layout(str(layout_value).lower())
        except ValueError as e:
            raise ConfigError(f"Invalid LAYOUT: {layout_value!r}") from e
    else:
        layout = Layout.PER_COUNTRY if backend == "nftables" else Layout.MERGED
    if backend == "bpf" and layout is not Layout.MERGED:
        raise ConfigError("The bpf backend only supports the merged layout")

    if cfg.get("XDP_OBJECT") and not cfg.get("INTERFACE"):
        raise ConfigError("XDP_OBJECT requires INTERFACE")

    table = cfg.get("NFT_TABLE") or DEFAULT_TABLE
    if not TABLE_NAME.match(table):
        raise ConfigError(f"Invalid NFT_TABLE: {table!r}")

    feed_url = cfg.get("FEED_URL") or DEFAULT_FEED_URL
    if "{country}" not in feed_url:
        raise ConfigError(f"FEED_URL must contain {{country}}: {feed_url!r}")

    port = cfg.get("METRICS_PORT")
    if port is not None and not 0 < int(port) < 65536:
        raise ConfigError(f"Invalid METRICS_PORT: {port}")

    return Config(
        mode=mode,
        countries=tuple(countries),
        refresh_interval=refresh,
        stats_interval=stats,
        backend=backend,
        layout=layout,
        nft_table=table,
        bpf_map_path=cfg.get("BPF_MAP_PATH"),
        xdp_object=cfg.get("XDP_OBJECT"),
        interface=cfg.get("INTERFACE"),
        feed_url=feed_url,
        timeout=int(cfg.get("TIMEOUT") or DEFAULT_TIMEOUT),
        metrics_port=int(port) if port is not None else None,
        metrics_addr=cfg.get("METRICS_ADDR") or "0.0.0.0",
        reset_on_start=bool(cfg.get("RESET_ON_START")),
        dry_run=bool(cfg.get("DRY_RUN")),
    )


def validate_config(config: Config) -> List[str]:
    """Return warnings for values that are allowed but probably wrong."""
    warnings = []
    if config.refresh_interval < 60:
        warnings.append(f"REFRESH_INTERVAL of {config.refresh_interval:g}s will hammer the feed service")
    if config.stats_interval > config.refresh_interval:
        warnings.append("STATS_INTERVAL is longer than REFRESH_INTERVAL")
    if config.timeout < 5:
        warnings.append(f"TIMEOUT may be too short: {config.timeout}s")
    if config.timeout > config.refresh_interval:
        warnings.append("TIMEOUT is longer than REFRESH_INTERVAL")
    if config.mode is Mode.ALLOW and config.backend == "bpf":
        warnings.append("The XDP filter passes unmatched traffic; allow mode only marks listed prefixes")
    return warnings
