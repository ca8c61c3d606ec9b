"""Shared utilities for the arXiv linker.

Includes text normalization, author and catalog-number handling, arXiv
identifier canonicalization, and the async HTTP transport with per-service
rate limiting used by the source clients and the verifier.
"""

from __future__ import annotations

import asyncio
import re
import time
import unicodedata
from typing import Any

import httpx

from arxiv_linker.base import FetchKind, Transport

# ------------- Constants & Regex -------------

OPENALEX_API = "https://api.openalex.org/works"
ARXIV_API = "https://export.arxiv.org/api/query"
MREF_LOOKUP = "https://www.ams.org/mrlookup"

CATALOG_PREFIX = "MR"

ARXIV_ID_RE = re.compile(
    r"""
    (?:
        arxiv[:\s/]?   # prefix
    )?
    (?P<id>
        (?:\d{4}\.\d{4,5})(?:v\d+)?   # new style
        |
        (?:[a-z\-]+(?:\.[A-Z]{2})?/\d{7})(?:v\d+)?  # old style e.g., math/0301001
    )
    """,
    re.IGNORECASE | re.VERBOSE,
)

# An arXiv reference written in text: an abstract/pdf URL or an "arXiv:" prefix
ARXIV_MENTION_RE = re.compile(
    r"""
    (?:https?://(?:www\.)?arxiv\.org/(?:abs|pdf)/|\barXiv:\s?)
    (?P<id>
        (?:\d{4}\.\d{4,5}|[a-z\-]+(?:\.[A-Z]{2})?/\d{7})(?:v\d+)?
    )
    (?:\.pdf)?
    """,
    re.IGNORECASE | re.VERBOSE,
)

_CATALOG_RE = re.compile(r"^\s*(?:MR)?\s*(\d{4,8})\s*$", re.IGNORECASE)

STOP_WORDS = frozenset(
    {
        "a",
        "an",
        "the",
        "and",
        "or",
        "nor",
        "but",
        "of",
        "in",
        "on",
        "at",
        "to",
        "for",
        "by",
        "with",
        "from",
        "into",
        "onto",
        "via",
        "as",
        "over",
        "under",
        "about",
        "between",
        "through",
        "without",
        "within",
        "upon",
    }
)


# ------------- Text Normalization -------------


def strip_diacritics(text: str) -> str:
    """Remove diacritics from text (e.g., 'Théorème' -> 'Theoreme')."""
    nfkd = unicodedata.normalize("NFKD", text)
    return "".join([c for c in nfkd if not unicodedata.combining(c)])


_DISALLOWED_RE = re.compile(r"[^A-Za-z0-9 \-]")
_HYPHEN_RUN_RE = re.compile(r"-{2,}")


def normalize_title(title: str | None) -> str:
    """Canonicalize a title for comparison.

    Strips diacritics, replaces anything outside ``[A-Za-z0-9 -]`` with a
    space, collapses hyphen runs and whitespace. Case is preserved.
    Idempotent: ``normalize_title(normalize_title(x)) == normalize_title(x)``.
    """
    if not title:
        return ""
    t = strip_diacritics(title)
    t = _DISALLOWED_RE.sub(" ", t)
    t = _HYPHEN_RUN_RE.sub("-", t)
    t = re.sub(r"\s+", " ", t)
    return t.strip()


def tokenize_title(title: str | None) -> list[str]:
    """Split a title into significant lower-case tokens, in order.

    Hyphens separate tokens; one-character tokens and stop words are dropped.
    """
    t = normalize_title(title).lower().replace("-", " ")
    return [tok for tok in t.split() if len(tok) > 1 and tok not in STOP_WORDS]


# ------------- Author Handling -------------


def clean_author_name(name: str | None) -> str:
    """Turn a catalog author string into 'Given Family' order.

    Parenthesised annotations are dropped, and 'Family, Given' is reordered.
    """
    if not name:
        return ""
    clean = re.sub(r"\(.*?\)", "", name).strip()
    if "," in clean:
        family, given = [p.strip() for p in clean.split(",", 1)]
        clean = f"{given} {family}".strip()
    return re.sub(r"\s+", " ", clean)


def author_surname(name: str) -> str:
    """Last whitespace-delimited token of an author name."""
    toks = name.split()
    return toks[-1] if toks else ""


# ------------- Catalog Numbers -------------


def normalize_catalog_number(value: str | None) -> str | None:
    """Normalize a catalog number to ``MR`` followed by digits.

    Accepts '1234567', 'MR1234567' and 'MR 1234567'. Returns None otherwise.
    """
    if not value:
        return None
    m = _CATALOG_RE.match(value)
    if not m:
        return None
    return f"{CATALOG_PREFIX}{m.group(1)}"


def strip_catalog_prefix(local_id: str) -> str:
    """Catalog number without its ``MR`` prefix (as printed by MRef)."""
    if local_id.upper().startswith(CATALOG_PREFIX):
        return local_id[len(CATALOG_PREFIX) :]
    return local_id


# ------------- arXiv Utilities -------------


def canonical_arxiv_url(url: Any) -> str | None:
    """Canonicalize an arXiv link so equal papers compare equal as strings.

    Upgrades http to https, rewrites ``/pdf/`` to ``/abs/`` and strips a
    trailing file extension. Bare arXiv ids become abstract URLs. Anything
    that is not a string gives None.
    """
    if not url or not isinstance(url, str):
        return None
    u = url.strip()
    if not u:
        return None
    if not re.match(r"^https?://", u, flags=re.IGNORECASE):
        m = ARXIV_ID_RE.fullmatch(u)
        if not m:
            return None
        return f"https://arxiv.org/abs/{m.group('id')}"
    u = re.sub(r"^http://", "https://", u, flags=re.IGNORECASE)
    u = u.replace("/pdf/", "/abs/")
    u = re.sub(r"\.(pdf|ps|gz|html?)$", "", u, flags=re.IGNORECASE)
    return u


def extract_arxiv_id_from_text(text: str | None) -> str | None:
    """Extract the first arXiv ID cited in text as a URL or 'arXiv:' reference."""
    if not text:
        return None
    m = ARXIV_MENTION_RE.search(text)
    return m.group("id") if m else None


# ------------- Errors -------------


class TransientFetchError(RuntimeError):
    """Network or server failure while fetching a URL."""


class ResponseParseError(ValueError):
    """A response body did not have the expected shape."""


# ------------- Async Rate Limiting -------------


class AsyncRateLimiter:
    """Async-compatible rate limiter using sliding window.

    This rate limiter uses an asyncio lock and sleep for non-blocking
    rate limiting in async contexts. It maintains a sliding window of
    timestamps to enforce the rate limit.
    """

    def __init__(self, req_per_min: int) -> None:
        self.req_per_min = max(req_per_min, 1)
        self.lock = asyncio.Lock()
        self.timestamps: list[float] = []

    async def wait(self) -> None:
        """Sleep until a request can be made within the rate limit."""
        async with self.lock:
            now = time.time()
            window = 60.0
            self.timestamps = [t for t in self.timestamps if now - t < window]

            if len(self.timestamps) >= self.req_per_min:
                earliest = min(self.timestamps)
                sleep_for = window - (now - earliest) + 0.01
                if sleep_for > 0:
                    await asyncio.sleep(sleep_for)
                    now = time.time()
                    self.timestamps = [t for t in self.timestamps if now - t < window]

            self.timestamps.append(now)


class AsyncRateLimiterRegistry:
    """Manages per-service async rate limiters."""

    DEFAULT_LIMITS = {
        "openalex": 100,  # OpenAlex: polite pool (~10 req/sec max)
        "arxiv": 30,  # arXiv: 30/min
        "mref": 20,  # AMS MRef: conservative
    }

    def __init__(self, limits: dict[str, int] | None = None) -> None:
        """Initialize the registry with optional custom limits.

        Args:
            limits: Optional dict of service name to requests per minute.
                   Overrides DEFAULT_LIMITS for specified services.
        """
        self._limits = {**self.DEFAULT_LIMITS, **(limits or {})}
        self._limiters: dict[str, AsyncRateLimiter] = {}

    def get(self, service: str) -> AsyncRateLimiter:
        """Get or create the async rate limiter for a service."""
        if service not in self._limiters:
            limit = self._limits.get(service, 30)  # Default 30/min
            self._limiters[service] = AsyncRateLimiter(limit)
        return self._limiters[service]

    async def wait(self, service: str) -> None:
        await self.get(service).wait()


# ------------- Async HTTP Transport -------------


class AsyncHttpClient(Transport):
    """Async HTTP transport with per-service rate limiting.

    Each fetch is a single attempt: network errors and 5xx statuses raise
    TransientFetchError, every other response body is returned as text so
    that API error payloads reach the caller.
    """

    SERVICE_BY_KIND = {
        FetchKind.OPENALEX: "openalex",
        FetchKind.ARXIV: "arxiv",
        FetchKind.MREF: "mref",
    }

    def __init__(
        self,
        rate_limiters: AsyncRateLimiterRegistry | None = None,
        timeout: float = 20.0,
        user_agent: str = "arxiv-linker/1.0",
    ) -> None:
        """Initialize the async HTTP client.

        Args:
            rate_limiters: AsyncRateLimiterRegistry for per-service rate limiting
            timeout: Request timeout in seconds
            user_agent: User-Agent header value
        """
        self.rate_limiters = rate_limiters or AsyncRateLimiterRegistry()
        self.timeout = timeout
        self.user_agent = user_agent
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client instance."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
            )
        return self._client

    async def fetch(self, url: str, kind: FetchKind) -> str:
        """Fetch a URL and return its body text.

        Raises:
            TransientFetchError: On network failure or a server error status
        """
        await self.rate_limiters.wait(self.SERVICE_BY_KIND.get(kind, "default"))
        try:
            resp = await self.client.get(url)
        except httpx.HTTPError as e:
            raise TransientFetchError(f"Network failure for {url}: {e}") from e
        if resp.status_code >= 500:
            raise TransientFetchError(f"Status {resp.status_code} for {url}")
        return resp.text

    async def close(self) -> None:
        """Close the async HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> AsyncHttpClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
