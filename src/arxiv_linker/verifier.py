"""Candidate verification against the arXiv abstract page and MRef.

A candidate is accepted when its arXiv title is close enough to the local
title. Titles in the doubtful band between the weak and strong thresholds are
accepted only if the AMS MRef lookup for the arXiv title and authors returns
the local catalog number.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urlencode

from bs4 import BeautifulSoup

from arxiv_linker.base import FetchKind, Injector, Transport
from arxiv_linker.matching import STRONG_ACCEPT_THRESHOLD, WEAK_ACCEPT_THRESHOLD, title_similarity
from arxiv_linker.models import Candidate, ExternalRecord, LocalRecord, PlacementMode
from arxiv_linker.utils import MREF_LOOKUP, author_surname, strip_catalog_prefix

# Number of arXiv author surnames sent to MRef
MREF_AUTHOR_LIMIT = 3
MREF_AUTHOR_JOINER = " and "


def parse_arxiv_abstract_page(html: str) -> ExternalRecord | None:
    """Read title and author surnames from an arXiv abstract page.

    Returns None when no title can be located.
    """
    soup = BeautifulSoup(html, "html.parser")
    title_el = soup.select_one("h1.title") or soup.select_one(".title")
    if title_el is None:
        return None
    title = re.sub(r"^\s*Title:\s*", "", title_el.get_text(" ", strip=True))
    title = " ".join(title.split())
    if not title:
        return None
    author_links = soup.select("div.authors a") or soup.select(".authors a")
    surnames = [author_surname(a.get_text(" ", strip=True)) for a in author_links]
    return ExternalRecord(title=title, author_surnames=[s for s in surnames if s])


def build_mref_url(record: ExternalRecord) -> str:
    authors = MREF_AUTHOR_JOINER.join(record.author_surnames[:MREF_AUTHOR_LIMIT])
    return f"{MREF_LOOKUP}?{urlencode({'ti': record.title, 'au': authors})}"


class Verifier:
    """Accepts or rejects one candidate for one local record."""

    def __init__(
        self,
        transport: Transport,
        injector: Injector,
        logger: logging.Logger | None = None,
        weak_threshold: float = WEAK_ACCEPT_THRESHOLD,
        strong_threshold: float = STRONG_ACCEPT_THRESHOLD,
    ) -> None:
        self.transport = transport
        self.injector = injector
        self.logger = logger or logging.getLogger(__name__)
        self.weak_threshold = weak_threshold
        self.strong_threshold = strong_threshold

    async def fetch_external_record(self, url: str) -> ExternalRecord | None:
        html = await self.transport.fetch(url, FetchKind.ARXIV)
        if not html:
            return None
        return parse_arxiv_abstract_page(html)

    async def cross_validate(self, external: ExternalRecord, record: LocalRecord) -> bool:
        """Check that MRef maps the arXiv title/authors to the local catalog number."""
        text = await self.transport.fetch(build_mref_url(external), FetchKind.MREF)
        number = strip_catalog_prefix(record.local_id)
        return bool(text) and bool(number) and number in text

    async def verify(self, candidate: Candidate, record: LocalRecord, placement: PlacementMode) -> bool:
        """Verify ``candidate`` for ``record`` and inject it on acceptance.

        Never raises: any failure while checking is logged and rejects the
        candidate.
        """
        if self.injector.is_annotated(record.anchor):
            return False

        try:
            external = await self.fetch_external_record(candidate.external_id)
            if external is None:
                self.logger.debug("No title on %s, rejecting", candidate.external_id)
                return False

            score = title_similarity(external.title, record.title)
            if score < self.weak_threshold:
                self.logger.debug(
                    "%s: title score %.2f below %.2f for %s",
                    record.local_id,
                    score,
                    self.weak_threshold,
                    candidate.external_id,
                )
                return False

            if score < self.strong_threshold:
                if not await self.cross_validate(external, record):
                    self.logger.debug(
                        "%s: MRef did not confirm %s (title score %.2f)",
                        record.local_id,
                        candidate.external_id,
                        score,
                    )
                    return False
                self.logger.debug("%s: MRef confirmed %s", record.local_id, candidate.external_id)
        except Exception as e:
            self.logger.debug("Verification of %s failed: %s", candidate.external_id, e)
            return False

        self.injector.inject(candidate.external_id, record.anchor, placement)
        self.logger.info("%s -> %s (%s)", record.local_id, candidate.external_id, placement.value)
        return True
