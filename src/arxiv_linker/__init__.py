"""arXiv Linker - Link MathSciNet records to their arXiv preprints.

This package provides:
- Candidate discovery via OpenAlex, with arXiv title search as fallback
- Title similarity scoring and MRef cross-validation of candidates
- A re-entrant orchestrator that annotates every record on a page

Example usage:
    from arxiv_linker import CandidateResolver, Verifier, ResolutionOrchestrator

    resolver = CandidateResolver(OpenAlexClient(http), ArxivSearchClient(http))
    verifier = Verifier(http, injector)
    orchestrator = ResolutionOrchestrator(page, resolver, verifier, injector, modes)
    await orchestrator.run_pass()
"""

from arxiv_linker._version import __version__
from arxiv_linker.base import FetchKind, Injector, RecordSource, SourceModeProvider, Transport
from arxiv_linker.config import LinkerConfig
from arxiv_linker.matching import (
    EARLY_EXIT_THRESHOLD,
    STRONG_ACCEPT_THRESHOLD,
    WEAK_ACCEPT_THRESHOLD,
    title_similarity,
)
from arxiv_linker.models import (
    BackoffState,
    Candidate,
    ExternalRecord,
    InjectionResult,
    LocalRecord,
    PageKind,
    PlacementMode,
    SourceMode,
)
from arxiv_linker.orchestrator import OrchestratorState, PassStats, ResolutionOrchestrator
from arxiv_linker.page import (
    PageSnapshot,
    PageWatcher,
    ReportInjector,
    StaticSourceMode,
    link_arxiv_references,
    page_signature,
)
from arxiv_linker.sources import ArxivSearchClient, CandidateResolver, OpenAlexClient, build_arxiv_queries
from arxiv_linker.utils import (
    AsyncHttpClient,
    AsyncRateLimiter,
    AsyncRateLimiterRegistry,
    ResponseParseError,
    TransientFetchError,
    canonical_arxiv_url,
    clean_author_name,
    extract_arxiv_id_from_text,
    normalize_catalog_number,
    normalize_title,
    strip_diacritics,
    tokenize_title,
)
from arxiv_linker.verifier import Verifier, parse_arxiv_abstract_page

__all__ = [
    # Version
    "__version__",
    # Collaborator interfaces
    "FetchKind",
    "Injector",
    "RecordSource",
    "SourceModeProvider",
    "Transport",
    # Data model
    "BackoffState",
    "Candidate",
    "ExternalRecord",
    "InjectionResult",
    "LocalRecord",
    "PageKind",
    "PlacementMode",
    "SourceMode",
    # Pipeline
    "ArxivSearchClient",
    "CandidateResolver",
    "OpenAlexClient",
    "OrchestratorState",
    "PassStats",
    "ResolutionOrchestrator",
    "Verifier",
    "build_arxiv_queries",
    "parse_arxiv_abstract_page",
    # Matching
    "EARLY_EXIT_THRESHOLD",
    "STRONG_ACCEPT_THRESHOLD",
    "WEAK_ACCEPT_THRESHOLD",
    "title_similarity",
    # Page boundary
    "PageSnapshot",
    "PageWatcher",
    "ReportInjector",
    "StaticSourceMode",
    "link_arxiv_references",
    "page_signature",
    # Configuration
    "LinkerConfig",
    # Utilities
    "AsyncHttpClient",
    "AsyncRateLimiter",
    "AsyncRateLimiterRegistry",
    "ResponseParseError",
    "TransientFetchError",
    "canonical_arxiv_url",
    "clean_author_name",
    "extract_arxiv_id_from_text",
    "normalize_catalog_number",
    "normalize_title",
    "strip_diacritics",
    "tokenize_title",
]
