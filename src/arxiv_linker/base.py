"""Abstract collaborator interfaces between the pipeline and its host page."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from arxiv_linker.models import LocalRecord, PageKind, PlacementMode, SourceMode


class FetchKind(Enum):
    """Target endpoint of a fetch, used for routing and rate limiting only."""

    OPENALEX = "openalex"
    ARXIV = "arxiv"
    MREF = "mref"


class Transport(ABC):
    """Fetches URLs on behalf of the pipeline."""

    @abstractmethod
    async def fetch(self, url: str, kind: FetchKind) -> str:
        """Return the body text of ``url``.

        Implementations raise ``TransientFetchError`` on network failure.
        """
        pass


class RecordSource(ABC):
    """Extraction layer: supplies the records shown on the current page."""

    @abstractmethod
    def page_kind(self) -> PageKind:
        """Return whether the page lists many records or shows a single one."""
        pass

    @abstractmethod
    def list_records(self) -> list[LocalRecord]:
        """Return every record on a batch page."""
        pass

    @abstractmethod
    def current_record(self) -> LocalRecord | None:
        """Return the record of a single-record page, possibly partially rendered."""
        pass


class Injector(ABC):
    """Renders accepted matches into the page."""

    @abstractmethod
    def is_annotated(self, anchor: Any) -> bool:
        """Return True if a result was already injected at ``anchor``."""
        pass

    @abstractmethod
    def inject(self, external_id: str, anchor: Any, placement: PlacementMode) -> None:
        """Show ``external_id`` at ``anchor``. Called at most once per anchor."""
        pass


class SourceModeProvider(ABC):
    """Configuration source for the catalog preference."""

    @abstractmethod
    def current_source_mode(self) -> SourceMode:
        pass
