"""Data model for the resolution pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SourceMode(Enum):
    """Which external catalogs the candidate resolver may query."""

    AUTO = "auto"  # primary first, secondary when primary has nothing
    PRIMARY_ONLY = "primary"
    SECONDARY_ONLY = "secondary"

    @classmethod
    def parse(cls, value: str | SourceMode) -> SourceMode:
        """Parse a mode from its config/CLI spelling ('auto', 'primary', 'secondary')."""
        if isinstance(value, SourceMode):
            return value
        key = (value or "").strip().lower()
        for mode in cls:
            if key in (mode.value, mode.name.lower()):
                return mode
        raise ValueError(f"Unknown source mode: {value!r}")


class PlacementMode(Enum):
    """Where an accepted link is shown on the page."""

    COMPACT = "compact"  # inline badge on a list entry
    PROMINENT = "prominent"  # standalone button on a detail page


class PageKind(Enum):
    """Kind of page the record source is currently showing."""

    BATCH = "batch"
    SINGLE = "single"
    OTHER = "other"


@dataclass(frozen=True)
class LocalRecord:
    """A bibliographic entry discovered on the host page.

    Attributes:
        title: Title as shown on the page
        authors: Author names in page order ('Given Family')
        local_id: Normalized catalog number (e.g. 'MR1234567'), '' if not rendered yet
        anchor: Opaque reference used by the injector to place the result
    """

    title: str
    authors: tuple[str, ...] = ()
    local_id: str = ""
    anchor: Any = field(default=None, compare=False)

    @property
    def is_ready(self) -> bool:
        """True once both title and catalog number are present."""
        return bool(self.title) and bool(self.local_id)


@dataclass(frozen=True)
class Candidate:
    """A possible external match; ``score`` is None for unranked sources."""

    external_id: str
    score: float | None = None


@dataclass
class ExternalRecord:
    """Title and author surnames read from a candidate's detail page."""

    title: str
    author_surnames: list[str] = field(default_factory=list)


@dataclass
class BackoffState:
    """Rate-limit window of the primary source.

    ``until`` is a clock timestamp in seconds; it only ever moves forward.
    """

    until: float = 0.0

    def active(self, now: float) -> bool:
        return now < self.until

    def extend(self, until: float) -> None:
        self.until = max(self.until, until)


@dataclass
class InjectionResult:
    """Outcome of annotating one record."""

    success: bool
    placement: PlacementMode
    external_id: str | None = None
    local_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "placement": self.placement.value,
            "external_id": self.external_id,
            "local_id": self.local_id,
        }
