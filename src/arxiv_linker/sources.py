"""Candidate discovery: OpenAlex (primary), arXiv search (secondary) and the resolver.

Both clients degrade every failure (transport errors, malformed responses,
API error payloads) to an empty candidate list; neither raises to the caller.
"""

from __future__ import annotations

import json
import logging
import re
import time
import xml.etree.ElementTree as ET
from collections.abc import Callable
from typing import Any
from urllib.parse import quote, urlencode

from arxiv_linker.base import FetchKind, Transport
from arxiv_linker.matching import EARLY_EXIT_THRESHOLD, title_similarity
from arxiv_linker.models import BackoffState, Candidate, SourceMode
from arxiv_linker.utils import (
    ARXIV_API,
    OPENALEX_API,
    ResponseParseError,
    TransientFetchError,
    canonical_arxiv_url,
    normalize_title,
    tokenize_title,
)

ATOM_NS = {"atom": "http://www.w3.org/2005/Atom"}

_RATE_LIMIT_RE = re.compile(r"rate[\s_-]*limit|quota|too many requests|\b429\b", re.IGNORECASE)
_RETRY_AFTER_RE = re.compile(r"retry[\s_-]*after\D{0,10}(\d+(?:\.\d+)?)", re.IGNORECASE)

DEFAULT_BACKOFF_SECONDS = 3600.0


# ------------- Primary source: OpenAlex -------------


def openalex_work_to_arxiv_url(work: dict[str, Any]) -> str | None:
    """Extract the canonical arXiv URL of an OpenAlex work, if it has one.

    Prefers the explicit ``ids.arxiv`` field, then any location hosted on arXiv.
    Fields of an unexpected type are ignored.
    """
    if not isinstance(work, dict):
        return None
    ids = work.get("ids")
    url = canonical_arxiv_url(ids.get("arxiv")) if isinstance(ids, dict) else None
    if url:
        return url
    locations = work.get("locations")
    if not isinstance(locations, list):
        return None
    for loc in locations:
        if not isinstance(loc, dict):
            continue
        source = loc.get("source")
        name = source.get("display_name") if isinstance(source, dict) else None
        landing = loc.get("landing_page_url")
        landing = landing if isinstance(landing, str) else ""
        if name == "arXiv" or "arxiv.org" in landing:
            return canonical_arxiv_url(landing or loc.get("pdf_url"))
    return None


def _retry_after_seconds(payload: dict[str, Any]) -> float | None:
    """Read a retry hint (seconds) from an API error payload."""
    for key in ("retry_after", "retryAfter", "retry-after"):
        value = payload.get(key)
        if value is not None:
            try:
                return float(value)
            except (TypeError, ValueError):
                pass
    m = _RETRY_AFTER_RE.search(f"{payload.get('error', '')} {payload.get('message', '')}")
    if m:
        return float(m.group(1))
    return None


class OpenAlexClient:
    """Single-shot title search against OpenAlex.

    Results are unranked; ranking is left to the verifier. A shared
    BackoffState acts as a cooperative circuit breaker after a rate-limit
    error payload: while it is active no request is made at all.
    """

    def __init__(
        self,
        transport: Transport,
        backoff: BackoffState | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
        per_page: int = 5,
        mailto: str | None = None,
        default_backoff: float = DEFAULT_BACKOFF_SECONDS,
    ) -> None:
        self.transport = transport
        self.backoff = backoff if backoff is not None else BackoffState()
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.per_page = per_page
        self.mailto = mailto
        self.default_backoff = default_backoff

    def build_url(self, title: str) -> str:
        query = quote(normalize_title(title), safe="")
        url = f"{OPENALEX_API}?filter=display_name.search:{query}&per_page={self.per_page}"
        if self.mailto:
            url += f"&mailto={quote(self.mailto, safe='@')}"
        return url

    def parse_response(self, text: str) -> list[dict[str, Any]]:
        """Return the result list, or raise ResponseParseError.

        API error payloads are handled (and the backoff armed) before returning
        an empty list.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ResponseParseError(f"OpenAlex returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ResponseParseError("OpenAlex response is not an object")
        if "error" in data:
            self._handle_error_payload(data)
            return []
        results = data.get("results")
        if not isinstance(results, list):
            raise ResponseParseError("OpenAlex 'results' is not a list")
        return results

    def _handle_error_payload(self, payload: dict[str, Any]) -> None:
        message = f"{payload.get('error', '')} {payload.get('message', '')}".strip()
        self.logger.warning("OpenAlex error: %s", message or payload)
        if not _RATE_LIMIT_RE.search(message):
            return
        retry_after = _retry_after_seconds(payload)
        delay = retry_after if retry_after is not None else self.default_backoff
        self.backoff.extend(self.clock() + delay)
        self.logger.warning("OpenAlex rate limited; backing off for %.0f seconds", delay)

    async def search(self, title: str) -> list[Candidate]:
        """Search OpenAlex by title and return arXiv candidates in result order."""
        if self.backoff.active(self.clock()):
            self.logger.debug("OpenAlex backoff active, skipping search for %r", title)
            return []
        if not normalize_title(title):
            return []
        try:
            text = await self.transport.fetch(self.build_url(title), FetchKind.OPENALEX)
            works = self.parse_response(text)
        except TransientFetchError as e:
            self.logger.debug("OpenAlex search failed for %r: %s", title, e)
            return []
        except ResponseParseError as e:
            self.logger.warning("OpenAlex parse error for %r: %s", title, e)
            return []

        candidates: list[Candidate] = []
        seen: set[str] = set()
        for work in works:
            if not isinstance(work, dict):
                continue
            url = openalex_work_to_arxiv_url(work)
            if url and url not in seen:
                seen.add(url)
                candidates.append(Candidate(external_id=url))
        self.logger.debug("OpenAlex: %d arXiv candidate(s) for %r", len(candidates), title)
        return candidates


# ------------- Secondary source: arXiv search API -------------


def build_arxiv_queries(title: str) -> list[str]:
    """Build the cascade of arXiv search queries for a title, strictest first.

    1. first 8 significant tokens, each required in the title (>= 3 tokens)
    2. first 5 significant tokens, each required in the title (>= 2 tokens)
    3. the normalized title as a title phrase
    4. the normalized title as a full-text phrase
    """
    tokens = tokenize_title(title)
    phrase = normalize_title(title)
    queries: list[str] = []
    if len(tokens) >= 3:
        queries.append(" AND ".join(f"ti:{tok}" for tok in tokens[:8]))
    if len(tokens) >= 2:
        queries.append(" AND ".join(f"ti:{tok}" for tok in tokens[:5]))
    if phrase:
        queries.append(f'ti:"{phrase}"')
        queries.append(f'all:"{phrase}"')
    return list(dict.fromkeys(queries))


def parse_arxiv_feed(text: str) -> list[tuple[str, str]]:
    """Parse an arXiv Atom feed into (canonical abstract URL, title) pairs.

    Raises:
        ResponseParseError: If the feed is not well-formed XML
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ResponseParseError(f"arXiv returned malformed XML: {e}") from e
    entries: list[tuple[str, str]] = []
    for entry in root.findall("atom:entry", ATOM_NS):
        id_elem = entry.find("atom:id", ATOM_NS)
        title_elem = entry.find("atom:title", ATOM_NS)
        if id_elem is None or not id_elem.text or title_elem is None or not title_elem.text:
            continue
        if "/api/errors" in id_elem.text:
            continue
        url = canonical_arxiv_url(id_elem.text)
        if url:
            entries.append((url, " ".join(title_elem.text.split())))
    return entries


class ArxivSearchClient:
    """Token-based title search against the arXiv API with client-side ranking."""

    def __init__(
        self,
        transport: Transport,
        logger: logging.Logger | None = None,
        max_results: int = 10,
        early_exit_threshold: float = EARLY_EXIT_THRESHOLD,
    ) -> None:
        self.transport = transport
        self.logger = logger or logging.getLogger(__name__)
        self.max_results = max_results
        self.early_exit_threshold = early_exit_threshold

    def build_url(self, query: str) -> str:
        params = {"search_query": query, "start": 0, "max_results": self.max_results}
        return f"{ARXIV_API}?{urlencode(params)}"

    async def search(self, title: str) -> list[Candidate]:
        """Run the query cascade and return scored candidates, best first."""
        best: dict[str, float] = {}
        for query in build_arxiv_queries(title):
            try:
                text = await self.transport.fetch(self.build_url(query), FetchKind.ARXIV)
            except TransientFetchError as e:
                self.logger.debug("arXiv search failed for %s: %s", query, e)
                continue
            if not text or not text.strip():
                continue
            try:
                entries = parse_arxiv_feed(text)
            except ResponseParseError as e:
                self.logger.warning("arXiv parse error for %s: %s", query, e)
                continue

            for url, found_title in entries:
                score = title_similarity(found_title, title)
                if score > best.get(url, -1.0):
                    best[url] = score

            if best and max(best.values()) >= self.early_exit_threshold:
                self.logger.debug("arXiv: strong match after %s, skipping looser queries", query)
                break

        ranked = sorted(best.items(), key=lambda item: item[1], reverse=True)
        return [Candidate(external_id=url, score=score) for url, score in ranked]


# ------------- Candidate Resolver -------------


class CandidateResolver:
    """Dispatches a title search according to the configured source mode."""

    def __init__(
        self,
        primary: OpenAlexClient,
        secondary: ArxivSearchClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.logger = logger or logging.getLogger(__name__)

    async def resolve(self, title: str, mode: SourceMode) -> list[Candidate]:
        if mode is SourceMode.PRIMARY_ONLY:
            return await self.primary.search(title)
        if mode is SourceMode.SECONDARY_ONLY:
            return await self.secondary.search(title)

        candidates = await self.primary.search(title)
        if candidates:
            return candidates
        self.logger.debug("No OpenAlex candidates for %r, falling back to arXiv search", title)
        return await self.secondary.search(title)
