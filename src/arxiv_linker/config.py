"""Configuration dataclass for the arXiv linker."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from arxiv_linker.matching import EARLY_EXIT_THRESHOLD, STRONG_ACCEPT_THRESHOLD, WEAK_ACCEPT_THRESHOLD
from arxiv_linker.models import SourceMode

_NUMBER_FIELDS = (
    "weak_threshold",
    "strong_threshold",
    "early_exit_threshold",
    "openalex_per_page",
    "arxiv_max_results",
    "single_record_retries",
    "single_record_interval",
    "default_backoff_seconds",
    "timeout",
)
_INT_FIELDS = ("openalex_per_page", "arxiv_max_results", "single_record_retries")


@dataclass
class LinkerConfig:
    """Configuration for a linker run.

    Attributes:
        source_mode: Catalog preference ("auto", "primary" or "secondary")
        weak_threshold: Minimum title score for a candidate to be considered
        strong_threshold: Title score accepted without MRef cross-validation
        early_exit_threshold: arXiv search stops trying looser queries above this
        openalex_per_page: Number of OpenAlex results requested per search
        arxiv_max_results: Number of arXiv results requested per query
        single_record_retries: Polls for a late-rendered record on a detail page
        single_record_interval: Seconds between those polls
        default_backoff_seconds: OpenAlex backoff when a rate-limit error has no retry hint
        timeout: HTTP timeout in seconds
        user_agent: User-Agent header value
        mailto: Contact email for the OpenAlex polite pool
        rate_limits: Requests per minute per service ("openalex", "arxiv", "mref")
    """

    source_mode: str = "auto"
    weak_threshold: float = WEAK_ACCEPT_THRESHOLD
    strong_threshold: float = STRONG_ACCEPT_THRESHOLD
    early_exit_threshold: float = EARLY_EXIT_THRESHOLD
    openalex_per_page: int = 5
    arxiv_max_results: int = 10
    single_record_retries: int = 15
    single_record_interval: float = 1.0
    default_backoff_seconds: float = 3600.0
    timeout: float = 20.0
    user_agent: str = "arxiv-linker/1.0"
    mailto: str | None = None
    rate_limits: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ValueError if any setting has the wrong type or is out of range."""
        self._check_types()
        SourceMode.parse(self.source_mode)
        for name in ("weak_threshold", "strong_threshold", "early_exit_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.weak_threshold > self.strong_threshold:
            raise ValueError("weak_threshold must not exceed strong_threshold")
        if self.single_record_retries < 0:
            raise ValueError("single_record_retries must not be negative")
        if self.single_record_interval < 0 or self.timeout <= 0 or self.default_backoff_seconds < 0:
            raise ValueError("intervals and timeouts must be positive")
        if self.openalex_per_page < 1 or self.arxiv_max_results < 1:
            raise ValueError("result counts must be at least 1")

    def _check_types(self) -> None:
        if not isinstance(self.source_mode, (str, SourceMode)):
            raise ValueError(f"source_mode must be a string, got {self.source_mode!r}")
        for name in _NUMBER_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be a number, got {value!r}")
        for name in _INT_FIELDS:
            if not isinstance(getattr(self, name), int):
                raise ValueError(f"{name} must be an integer, got {getattr(self, name)!r}")
        if not isinstance(self.user_agent, str):
            raise ValueError(f"user_agent must be a string, got {self.user_agent!r}")
        if self.mailto is not None and not isinstance(self.mailto, str):
            raise ValueError(f"mailto must be a string, got {self.mailto!r}")
        if not isinstance(self.rate_limits, dict) or not all(
            isinstance(k, str) and isinstance(v, int) and not isinstance(v, bool) for k, v in self.rate_limits.items()
        ):
            raise ValueError("rate_limits must map service names to requests per minute")

    @property
    def mode(self) -> SourceMode:
        return SourceMode.parse(self.source_mode)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LinkerConfig:
        """Create config from a dictionary (e.g., loaded from YAML)."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> LinkerConfig:
        """Load config from a YAML file; an empty file gives the defaults."""
        try:
            import yaml
        except ImportError as err:
            raise ImportError("PyYAML required for config files. Install with: pip install pyyaml") from err

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as err:
                raise ValueError(f"Config file {path} is not valid YAML: {err}") from err
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary for serialization."""
        return {f.name: getattr(self, f.name) for f in fields(self)}
