"""Host-page boundary implementations.

These stand in for the browser side of the linker: a record source backed by
a saved page snapshot, an injector that collects results into a report, a
mutable source-mode setting, and the page watcher that decides when page
changes should trigger a new resolution pass.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from bs4 import BeautifulSoup, Comment, NavigableString

from arxiv_linker.base import Injector, RecordSource, SourceModeProvider
from arxiv_linker.models import InjectionResult, LocalRecord, PageKind, PlacementMode, SourceMode
from arxiv_linker.utils import (
    ARXIV_MENTION_RE,
    clean_author_name,
    extract_arxiv_id_from_text,
    normalize_catalog_number,
)

if TYPE_CHECKING:
    from arxiv_linker.orchestrator import ResolutionOrchestrator


# ------------- Record source -------------


def snapshot_record(item: dict[str, Any]) -> LocalRecord:
    """Build a LocalRecord from one snapshot entry.

    The anchor of a snapshot record is its catalog number.
    """
    title = (item.get("title") or "").strip()
    if title.endswith("."):
        title = title[:-1].rstrip()
    raw_authors = item.get("authors") or []
    if isinstance(raw_authors, str):
        raw_authors = raw_authors.split(";")
    authors = tuple(a for a in (clean_author_name(str(x)) for x in raw_authors) if a)
    local_id = normalize_catalog_number(str(item.get("mr") or item.get("local_id") or "")) or ""
    return LocalRecord(title=title, authors=authors, local_id=local_id, anchor=local_id or None)


class PageSnapshot(RecordSource):
    """RecordSource over a saved page: ``{"kind", "url", "records": [...]}``.

    ``kind`` is "batch" (search results) or "single" (one article page, whose
    record is the first entry).
    """

    def __init__(self, kind: PageKind, records: list[LocalRecord], url: str = "") -> None:
        self.kind = kind
        self.records = records
        self.url = url

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PageSnapshot:
        try:
            kind = PageKind(str(data.get("kind", "batch")).lower())
        except ValueError as err:
            raise ValueError(f"Unknown page kind: {data.get('kind')!r}") from err
        items = data.get("records") or []
        if not isinstance(items, list):
            raise ValueError("'records' must be a list")
        records = [snapshot_record(item) for item in items if isinstance(item, dict)]
        return cls(kind=kind, records=records, url=data.get("url") or "")

    @classmethod
    def from_file(cls, path: str | Path) -> PageSnapshot:
        """Load a snapshot from JSON, or YAML when the suffix is .yml/.yaml."""
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            if path.suffix.lower() in (".yml", ".yaml"):
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as err:
                    raise ValueError(f"Snapshot {path} is not valid YAML: {err}") from err
            else:
                data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Snapshot {path} must contain a mapping")
        return cls.from_dict(data)

    def page_kind(self) -> PageKind:
        return self.kind

    def list_records(self) -> list[LocalRecord]:
        # Entries without a catalog number cannot be cross-validated
        return [r for r in self.records if r.local_id]

    def current_record(self) -> LocalRecord | None:
        return self.records[0] if self.records else None

    def record_ids(self) -> list[str]:
        return [r.local_id for r in self.records if r.local_id]


# ------------- Injector -------------


class ReportInjector(Injector):
    """Injector that records accepted matches instead of rendering them."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.results: dict[Any, InjectionResult] = {}

    def is_annotated(self, anchor: Any) -> bool:
        return anchor in self.results

    def inject(self, external_id: str, anchor: Any, placement: PlacementMode) -> None:
        if anchor in self.results:
            raise RuntimeError(f"Anchor {anchor!r} is already annotated")
        self.results[anchor] = InjectionResult(
            success=True,
            placement=placement,
            external_id=external_id,
            local_id=str(anchor) if anchor is not None else None,
        )

    def write_jsonl(self, path: str | Path) -> None:
        """Write one JSON line per injected result."""
        with open(path, "w", encoding="utf-8") as fh:
            for result in self.results.values():
                fh.write(json.dumps(result.to_dict(), ensure_ascii=False) + "\n")
        self.logger.debug("Wrote %d result(s) to %s", len(self.results), path)


# ------------- Source mode -------------


class StaticSourceMode(SourceModeProvider):
    """A source-mode setting that can be changed between passes."""

    def __init__(self, mode: SourceMode = SourceMode.AUTO) -> None:
        self.mode = mode

    def current_source_mode(self) -> SourceMode:
        return self.mode

    def update(self, mode: SourceMode | str) -> None:
        self.mode = SourceMode.parse(mode)


# ------------- Reference list links -------------


def _link_mentions(soup: BeautifulSoup, node: NavigableString) -> int:
    text = str(node)
    pieces: list[Any] = []
    pos = 0
    for m in ARXIV_MENTION_RE.finditer(text):
        pieces.append(text[pos : m.start()])
        arxiv_id = m.group("id")
        link = soup.new_tag("a", href=f"https://arxiv.org/abs/{arxiv_id}")
        link.string = f"arXiv:{arxiv_id}"
        pieces.append(link)
        pos = m.end()
    if not pos:
        return 0
    pieces.append(text[pos:])
    for piece in pieces:
        if isinstance(piece, str) and not piece:
            continue
        node.insert_before(piece)
    node.extract()
    return (len(pieces) - 1) // 2


def link_arxiv_references(html: str) -> tuple[str, int]:
    """Turn plain arXiv citations in reference list items into links.

    Rewrites ``arXiv:ID`` and ``arxiv.org/abs/ID`` mentions inside ``<li>``
    elements into ``<a href="https://arxiv.org/abs/ID">arXiv:ID</a>``. Items
    that already contain a link to arxiv.org are left untouched.

    Returns:
        The rewritten HTML and the number of links created
    """
    soup = BeautifulSoup(html, "html.parser")
    created = 0
    for item in soup.find_all("li"):
        if item.select_one('a[href*="arxiv.org"]') is not None:
            continue
        if not extract_arxiv_id_from_text(item.get_text()):
            continue
        for node in list(item.find_all(string=True)):
            if isinstance(node, Comment) or node.find_parent("a") is not None:
                continue
            created += _link_mentions(soup, node)
    return str(soup), created


# ------------- Re-trigger detection -------------


def page_signature(record_ids: list[str]) -> str:
    """Signature of a result page; changes when pagination shows other records."""
    return "|".join(record_ids)


class PageWatcher:
    """Decides when page changes warrant a new resolution pass.

    A pass is triggered when the URL changes, when a batch page starts showing
    a different set of records (pagination with an unchanged result count),
    or when a single-record page still has no annotation and no pass is
    running.
    """

    def __init__(self, orchestrator: ResolutionOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.last_url: str | None = None
        self.last_signature = ""

    def observe(self, url: str, kind: PageKind, record_ids: list[str], annotated: bool) -> bool:
        """Inspect the current page state; returns True if a pass was requested."""
        if url != self.last_url:
            self.last_url = url
            self.last_signature = ""
            self.orchestrator.trigger("navigation")
            return True
        if kind is PageKind.BATCH:
            signature = page_signature(record_ids)
            if signature and signature != self.last_signature:
                self.last_signature = signature
                self.orchestrator.trigger("pagination")
                return True
            return False
        if kind is PageKind.SINGLE and not annotated and self.orchestrator.is_idle:
            self.orchestrator.trigger("mutation")
            return True
        return False
