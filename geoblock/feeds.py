"""Per-country CIDR feeds: download and parsing."""

import logging
import http.client
import re
import time
import urllib.error
import urllib.request
from typing import Iterable, Iterator, List, Optional
from urllib.parse import urlparse

from .errors import FeedFetchError
from .models import Prefix

DEFAULT_FEED_URL = "https://www.ipdeny.com/ipblocks/data/aggregated/{country}-aggregated.zone"
DEFAULT_TIMEOUT = 30
DEFAULT_MAX_RETRIES = 2  # Total of 3 attempts
DEFAULT_RETRY_DELAYS = [1, 4]
USER_AGENT = "geoblock"

logger = logging.getLogger(__name__)

# ---------------- Regexes ----------------
COMMENT = re.compile(r'^\s*[#;]')
CIDR_V4 = re.compile(r'^\s*(\d{1,3}(?:\.\d{1,3}){3}(?:/\d{1,2})?)\s*$')


# ---------------- Parsing ----------------
def parse_line(line: str) -> Optional[Prefix]:
    """Parse one feed line into a Prefix, or None if it is not an IPv4 CIDR."""
    if not line.strip() or COMMENT.match(line):
        return None
    m = CIDR_V4.match(line)
    if not m:
        return None
    try:
        return Prefix.parse(m.group(1))
    except ValueError:
        return None


def parse_feed(text: str) -> Iterator[Prefix]:
    """Lazily yield the prefixes of a newline-delimited feed.

    Malformed lines, comments and IPv6 entries are skipped silently; feeds
    are external input and partial garbage is expected.
    """
    for line in text.splitlines():
        prefix = parse_line(line)
        if prefix is not None:
            yield prefix


# ---------------- Fetching ----------------
def is_local_path(s: str) -> bool:
    return bool(s) and ("://" not in s or urlparse(s).scheme in ('', 'file'))


class FeedSource:
    """Fetch raw feed text per country from a URL or path template.

    ``template`` must contain ``{country}``. Templates without a scheme, or
    with ``file://``, are read from disk.
    """

    def __init__(self, template: str = DEFAULT_FEED_URL, timeout: int = DEFAULT_TIMEOUT,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 retry_delays: Iterable[float] = DEFAULT_RETRY_DELAYS):
        self.template = template
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delays: List[float] = list(retry_delays) or [0]

    def location(self, country: str) -> str:
        return self.template.format(country=country)

    def fetch(self, country: str) -> str:
        """Return the feed text for ``country``.

        Raises:
            FeedFetchError: on a non-200 response, transport error or
                unreadable file, after retries are exhausted.
        """
        src = self.location(country)
        if is_local_path(src):
            path = urlparse(src).path if src.startswith("file://") else src
            try:
                with open(path, "r", encoding="utf-8", errors="ignore") as f:
                    return f.read()
            except OSError as e:
                raise FeedFetchError(country, e) from e
        return self._fetch_url(country, src)

    def _delay(self, attempt: int) -> float:
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]

    def _fetch_url(self, country: str, src: str) -> str:
        req = urllib.request.Request(src, headers={"User-Agent": USER_AGENT})

        last_error: Optional[BaseException] = None
        for attempt in range(self.max_retries + 1):
            try:
                with urllib.request.urlopen(req, timeout=self.timeout) as r:
                    status = getattr(r, "status", 200)
                    if status == 200:
                        return r.read().decode("utf-8", "ignore")
                    last_error = RuntimeError(f"HTTP {status}")
                    if status < 500:
                        break

            except urllib.error.HTTPError as e:
                # 4xx will not get better by retrying
                last_error = e
                if 400 <= e.code < 500:
                    break

            except urllib.error.URLError as e:
                last_error = e
                if 'certificate' in str(getattr(e, 'reason', '')).lower():
                    logger.warning("SSL certificate verification failed for %s: %s", src, e.reason)
                    break

            except (OSError, http.client.HTTPException) as e:
                # timeouts, connection resets, truncated bodies and bad status lines
                last_error = e

            if attempt < self.max_retries:
                delay = self._delay(attempt)
                logger.debug("Failed to fetch %s (attempt %d/%d): %s. Retrying in %ss",
                             src, attempt + 1, self.max_retries + 1, last_error, delay)
                time.sleep(delay)

        raise FeedFetchError(country, last_error)

