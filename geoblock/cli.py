#!/usr/bin/env python3
"""
geoblock: country-based access policy from geo-IP CIDR feeds.

- Reads a shell-style conf (MODE, COUNTRIES, REFRESH_INTERVAL, BACKEND, ...); flags override it
- Fetches one aggregated CIDR feed per country, skipping countries whose feed fails
- Applies only the difference to nftables sets or a pinned XDP/LPM map, additions first
- Re-synchronizes every REFRESH_INTERVAL and polls counters every STATS_INTERVAL
- Exposes Prometheus metrics with --metrics-port
- The first pass must succeed; later failures are logged and retried next cycle
"""

import argparse
import logging
import os
import signal
import sys
from typing import List, Optional

from .config import (BACKENDS, DEFAULT_CONF_PATH, Config, build_config, load_conf,
                     validate_config)
from .engine import Reconciler
from .errors import BackendUnavailable, ConfigError, GeoblockError
from .feeds import FeedSource
from .metrics import ObservabilityHub
from .models import Layout
from .scheduler import Scheduler
from .stats import StatisticsReader
from .stores import build_store

logger = logging.getLogger("geoblock")

# argparse dest -> conf key
OVERRIDES = {
    "countries": "COUNTRIES",
    "refresh_interval": "REFRESH_INTERVAL",
    "stats_interval": "STATS_INTERVAL",
    "backend": "BACKEND",
    "layout": "LAYOUT",
    "table": "NFT_TABLE",
    "map_path": "BPF_MAP_PATH",
    "xdp_object": "XDP_OBJECT",
    "interface": "INTERFACE",
    "feed_url": "FEED_URL",
    "timeout": "TIMEOUT",
    "metrics_port": "METRICS_PORT",
    "metrics_addr": "METRICS_ADDR",
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Enforce country-based access policy from geo-IP CIDR feeds.")
    ap.add_argument("--conf", default=None, help=f"Config file (default {DEFAULT_CONF_PATH} if present).")
    mode = ap.add_mutually_exclusive_group()
    mode.add_argument("--allow", action="store_true", help="Allow only the listed countries.")
    mode.add_argument("--deny", action="store_true", help="Deny the listed countries.")
    ap.add_argument("--countries", help="Comma-separated country codes, e.g. cn,ru.")
    ap.add_argument("--refresh-interval", help="Feed refresh interval: seconds or 30m/1h/1d (default 1h).")
    ap.add_argument("--stats-interval", help="Counter polling interval (default 10s).")
    ap.add_argument("--backend", choices=BACKENDS, help="Enforcement backend (default nftables).")
    ap.add_argument("--layout", choices=[layout.value for layout in Layout],
                    help="One set per country, or one merged set (bpf: merged only).")
    ap.add_argument("--table", help="nftables table name (default geoblock).")
    ap.add_argument("--map-path", help="Pinned LPM map path for the bpf backend.")
    ap.add_argument("--xdp-object", help="XDP object to load and attach (bpf backend).")
    ap.add_argument("--interface", help="Interface to attach the XDP program to.")
    ap.add_argument("--feed-url", help="Feed URL or path template containing {country}.")
    ap.add_argument("--timeout", type=int, help="Feed download timeout in seconds (default 30).")
    ap.add_argument("--metrics-port", type=int, help="Serve Prometheus metrics on this port.")
    ap.add_argument("--metrics-addr", help="Metrics listen address (default 0.0.0.0).")
    ap.add_argument("--reset", action="store_true", help="Clear everything geoblock installed before the first apply.")
    ap.add_argument("--once", action="store_true", help="Run one reconciliation pass and exit.")
    ap.add_argument("--dry-run", action="store_true", help="Compute and log the diff without changing the backend.")
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging.")
    ap.add_argument("--quiet", "-q", action="store_true", help="Suppress non-error output.")
    return ap.parse_args(argv)


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    if quiet:
        logging.basicConfig(level=logging.ERROR, format='%(message)s')
    elif verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def config_from_args(args: argparse.Namespace) -> Config:
    """Load the conf file, apply command-line overrides and validate.

    Raises:
        ConfigError: on any invalid or contradictory setting.
    """
    path = args.conf
    if path is None and os.path.exists(DEFAULT_CONF_PATH):
        path = DEFAULT_CONF_PATH
    cfg = load_conf(path)

    if args.allow:
        cfg["MODE"] = "allow"
    elif args.deny:
        cfg["MODE"] = "deny"
    for dest, key in OVERRIDES.items():
        value = getattr(args, dest)
        if value is not None:
            cfg[key] = value
    if args.reset:
        cfg["RESET_ON_START"] = True
    if args.dry_run:
        cfg["DRY_RUN"] = True

    config = build_config(cfg)
    for warning in validate_config(config):
        logger.warning("Config warning: %s", warning)
    return config


def run(config: Config, once: bool = False, hub: Optional[ObservabilityHub] = None) -> int:
    """Run the daemon until SIGINT/SIGTERM. Returns the process exit status."""
    hub = hub or ObservabilityHub()
    store = build_store(config)
    source = FeedSource(config.feed_url, timeout=config.timeout)

    if config.dry_run:
        logger.info("[DRY RUN MODE] No changes will be made to the backend")
    logger.info("Mode: %s, countries: %s, backend: %s (%s)", config.mode.value,
                ",".join(config.countries), config.backend, config.layout.value)

    try:
        with store:
            engine = Reconciler(config, store, source, hub)
            stats = StatisticsReader(store, hub)
            try:
                engine.initial_pass()
            except GeoblockError as e:
                logger.error("Initial reconciliation failed: %s", e)
                return 1
            stats.poll()
            if once:
                logger.info("Done.")
                return 0

            if config.metrics_port:
                try:
                    hub.serve(config.metrics_port, config.metrics_addr)
                except OSError as e:
                    logger.error("Cannot serve metrics on %s:%d: %s", config.metrics_addr, config.metrics_port, e)
                    return 1

            scheduler = Scheduler(engine, stats, config.refresh_interval, config.stats_interval)

            def _shutdown(signum, frame):
                logger.info("Received signal %d, stopping", signum)
                scheduler.stop()

            signal.signal(signal.SIGTERM, _shutdown)
            signal.signal(signal.SIGINT, _shutdown)
            scheduler.start()
            scheduler.wait()
    except BackendUnavailable as e:
        logger.error("Enforcement backend unavailable: %s", e)
        return 1

    logger.info("Stopped.")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(args.verbose, args.quiet)
    try:
        config = config_from_args(args)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(2)
    sys.exit(run(config, once=args.once))


if __name__ == "__main__":
    main()
