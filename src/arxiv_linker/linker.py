#!/usr/bin/env python3
"""
arxiv-link: link MathSciNet records to their arXiv preprints.

Reads a saved MathSciNet page snapshot (search results or a single article),
finds arXiv candidates for every record via:
  1) OpenAlex title search (arXiv identifiers linked to the work),
  2) arXiv API title search (fallback, client-side ranked),
and accepts a candidate when its arXiv title matches the record title, using
the AMS MRef lookup to confirm borderline titles against the MR number.

Examples
--------
$ arxiv-link search_page.json --report links.jsonl
$ arxiv-link article.yaml --source secondary --verbose
$ arxiv-link page.json --config linker.yaml --mailto me@example.org
$ arxiv-link article.json --link-references article.html article_linked.html

Minimal snapshot:
{"kind": "batch", "url": "https://mathscinet.ams.org/mathscinet/publications-search?query=...",
 "records": [{"mr": "MR1234567", "title": "Sparse recovery via L1 minimization",
              "authors": ["Doe, Jane", "Smith, John"]}]}
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass

from arxiv_linker.config import LinkerConfig
from arxiv_linker.models import BackoffState, PageKind
from arxiv_linker.orchestrator import PassStats, ResolutionOrchestrator
from arxiv_linker.page import PageSnapshot, PageWatcher, ReportInjector, StaticSourceMode, link_arxiv_references
from arxiv_linker.sources import ArxivSearchClient, CandidateResolver, OpenAlexClient
from arxiv_linker.utils import AsyncHttpClient, AsyncRateLimiterRegistry
from arxiv_linker.verifier import Verifier


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="arxiv-link",
        description="Link MathSciNet records in a page snapshot to their arXiv preprints.",
    )
    p.add_argument("snapshot", help="Page snapshot (.json, .yml or .yaml)")
    p.add_argument("--config", help="YAML configuration file")
    p.add_argument(
        "--source",
        choices=["auto", "primary", "secondary"],
        help="Catalog preference (default: from config, else auto)",
    )
    p.add_argument("--report", help="Write JSONL report of accepted links")
    p.add_argument(
        "--link-references",
        nargs=2,
        metavar=("SRC_HTML", "DEST_HTML"),
        help="Link plain arXiv citations in the reference list of SRC_HTML, writing DEST_HTML",
    )
    p.add_argument("--mailto", help="Contact email for the OpenAlex polite pool")
    p.add_argument("--timeout", type=float, help="HTTP timeout seconds")
    p.add_argument("--verbose", action="store_true", help="Verbose logging")
    return p


def init_logging(verbose: bool) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    return logging.getLogger("arxiv_linker")


def load_config(args: argparse.Namespace) -> LinkerConfig:
    """Build the run configuration: config file first, then CLI overrides."""
    config = LinkerConfig.from_yaml(args.config) if args.config else LinkerConfig()
    if args.source:
        config.source_mode = args.source
    if args.mailto:
        config.mailto = args.mailto
    if args.timeout is not None:
        config.timeout = args.timeout
    config.validate()
    return config


@dataclass
class LinkerComponents:
    """Components wired for one run."""

    http: AsyncHttpClient
    injector: ReportInjector
    mode: StaticSourceMode
    orchestrator: ResolutionOrchestrator


def build_components(config: LinkerConfig, snapshot: PageSnapshot, logger: logging.Logger) -> LinkerComponents:
    """Wire transport, clients, verifier and orchestrator from the configuration."""
    http = AsyncHttpClient(
        rate_limiters=AsyncRateLimiterRegistry(config.rate_limits),
        timeout=config.timeout,
        user_agent=config.user_agent,
    )
    primary = OpenAlexClient(
        http,
        backoff=BackoffState(),
        logger=logger,
        per_page=config.openalex_per_page,
        mailto=config.mailto,
        default_backoff=config.default_backoff_seconds,
    )
    secondary = ArxivSearchClient(
        http,
        logger=logger,
        max_results=config.arxiv_max_results,
        early_exit_threshold=config.early_exit_threshold,
    )
    injector = ReportInjector(logger=logger)
    verifier = Verifier(
        http,
        injector,
        logger=logger,
        weak_threshold=config.weak_threshold,
        strong_threshold=config.strong_threshold,
    )
    mode = StaticSourceMode(config.mode)
    orchestrator = ResolutionOrchestrator(
        records=snapshot,
        resolver=CandidateResolver(primary, secondary, logger=logger),
        verifier=verifier,
        injector=injector,
        mode_provider=mode,
        logger=logger,
        single_record_retries=config.single_record_retries,
        single_record_interval=config.single_record_interval,
    )
    return LinkerComponents(http=http, injector=injector, mode=mode, orchestrator=orchestrator)


async def run_snapshot(components: LinkerComponents, snapshot: PageSnapshot) -> PassStats | None:
    """Run resolution over a snapshot until the orchestrator is idle again."""
    watcher = PageWatcher(components.orchestrator)
    try:
        watcher.observe(
            snapshot.url,
            snapshot.page_kind(),
            snapshot.record_ids(),
            annotated=False,
        )
        await components.orchestrator.wait_idle()
    finally:
        await components.http.close()
    return components.orchestrator.last_stats


def link_references_file(src: str, dest: str, logger: logging.Logger) -> int:
    """Rewrite plain arXiv citations in the reference list of an HTML page as links."""
    with open(src, encoding="utf-8") as fh:
        html = fh.read()
    linked, created = link_arxiv_references(html)
    with open(dest, "w", encoding="utf-8") as fh:
        fh.write(linked)
    logger.info("Linked %d arXiv reference(s) in %s", created, dest)
    return created


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the arXiv linker.

    Returns:
        Exit code: 0=pass completed, 1=configuration or input error.
    """
    args = build_arg_parser().parse_args(argv)
    logger = init_logging(args.verbose)

    try:
        config = load_config(args)
        snapshot = PageSnapshot.from_file(args.snapshot)
    except (OSError, ValueError) as e:
        logger.error("%s", e)
        return 1

    if args.link_references:
        try:
            link_references_file(*args.link_references, logger=logger)
        except OSError as e:
            logger.error("%s", e)
            return 1

    if snapshot.page_kind() is PageKind.OTHER:
        logger.info("Nothing to link on this page")
        return 0

    components = build_components(config, snapshot, logger)
    stats = asyncio.run(run_snapshot(components, snapshot))

    matched = len(components.injector.results)
    logger.info("Summary: records=%d, matched=%d", stats.records if stats else 0, matched)
    for result in components.injector.results.values():
        logger.info("  %s -> %s", result.local_id, result.external_id)

    if args.report:
        components.injector.write_jsonl(args.report)
    return 0
