"""Tests for the resolution orchestrator."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock

import pytest
from conftest import abs_page

from arxiv_linker import (
    ArxivSearchClient,
    Candidate,
    CandidateResolver,
    FetchKind,
    LocalRecord,
    OpenAlexClient,
    OrchestratorState,
    PageKind,
    PageSnapshot,
    PlacementMode,
    RecordSource,
    ResolutionOrchestrator,
    SourceMode,
    StaticSourceMode,
    Verifier,
)
from arxiv_linker.orchestrator import TRANSITIONS, OrchestratorEvent


class FakeResolver:
    """Resolver returning one candidate per title; raises for titles in ``fail``."""

    def __init__(self, fail: set[str] | None = None):
        self.fail = fail or set()
        self.calls: list[tuple[str, SourceMode]] = []

    async def resolve(self, title: str, mode: SourceMode) -> list[Candidate]:
        self.calls.append((title, mode))
        if title in self.fail:
            raise RuntimeError(f"resolver exploded on {title}")
        return [Candidate(f"https://arxiv.org/abs/{len(self.calls)}")]


class FakeVerifier:
    """Accepts every candidate unless the record title is in ``reject``."""

    def __init__(self, injector, reject: set[str] | None = None):
        self.injector = injector
        self.reject = reject or set()
        self.calls: list[tuple[Candidate, LocalRecord, PlacementMode]] = []

    async def verify(self, candidate, record, placement) -> bool:
        self.calls.append((candidate, record, placement))
        if record.title in self.reject or self.injector.is_annotated(record.anchor):
            return False
        self.injector.inject(candidate.external_id, record.anchor, placement)
        return True


class SequenceSource(RecordSource):
    """Single-record page whose record appears after a few polls."""

    def __init__(self, sequence: list[LocalRecord | None]):
        self.sequence = list(sequence)
        self.polls = 0

    def page_kind(self) -> PageKind:
        return PageKind.SINGLE

    def list_records(self) -> list[LocalRecord]:
        return []

    def current_record(self) -> LocalRecord | None:
        self.polls += 1
        if len(self.sequence) > 1:
            return self.sequence.pop(0)
        return self.sequence[0]


def batch_page(*titles: str) -> PageSnapshot:
    records = [
        LocalRecord(title=title, authors=("Jane Doe",), local_id=f"MR{1000000 + i}", anchor=f"MR{1000000 + i}")
        for i, title in enumerate(titles)
    ]
    return PageSnapshot(PageKind.BATCH, records)


class FakeSleep:
    def __init__(self):
        self.intervals: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.intervals.append(seconds)


class TestTransitions:
    """Tests for the re-entrancy state table."""

    def test_table_is_complete(self):
        for state in OrchestratorState:
            assert (state, OrchestratorEvent.TRIGGER) in TRANSITIONS
        assert TRANSITIONS[(OrchestratorState.RUNNING_WITH_PENDING, OrchestratorEvent.PASS_DONE)] is (
            OrchestratorState.RUNNING
        )
        assert TRANSITIONS[(OrchestratorState.RUNNING, OrchestratorEvent.PASS_DONE)] is OrchestratorState.IDLE
        assert (OrchestratorState.IDLE, OrchestratorEvent.PASS_DONE) not in TRANSITIONS


class TestBatchPass:
    """Tests for passes over a list of records."""

    def test_annotates_every_ready_record(self, injector, logger):
        page = batch_page("First title here", "Second title here")
        page.records.append(LocalRecord(title="Not yet rendered", local_id=""))

        async def run():
            orchestrator = ResolutionOrchestrator(
                page, FakeResolver(), FakeVerifier(injector), injector, StaticSourceMode(), logger=logger
            )
            stats = await orchestrator.run_pass()
            return orchestrator, stats

        orchestrator, stats = asyncio.run(run())
        assert stats.kind is PageKind.BATCH
        assert (stats.records, stats.matched, stats.failed) == (2, 2, 0)
        assert set(injector.results) == {"MR1000000", "MR1000001"}
        assert all(r.placement is PlacementMode.COMPACT for r in injector.results.values())
        assert orchestrator.is_idle
        assert orchestrator.passes_completed == 1

    def test_record_failure_is_isolated(self, injector, logger):
        page = batch_page("Broken record", "Healthy record")
        resolver = FakeResolver(fail={"Broken record"})

        async def run():
            orchestrator = ResolutionOrchestrator(
                page, resolver, FakeVerifier(injector), injector, StaticSourceMode(), logger=logger
            )
            return await orchestrator.run_pass()

        stats = asyncio.run(run())
        assert (stats.records, stats.matched, stats.failed) == (2, 1, 1)
        assert list(injector.results) == ["MR1000001"]

    def test_rejected_record_not_counted_as_failure(self, injector, logger):
        page = batch_page("Unmatched record")

        async def run():
            orchestrator = ResolutionOrchestrator(
                page,
                FakeResolver(),
                FakeVerifier(injector, reject={"Unmatched record"}),
                injector,
                StaticSourceMode(),
                logger=logger,
            )
            return await orchestrator.run_pass()

        stats = asyncio.run(run())
        assert (stats.records, stats.matched, stats.failed) == (1, 0, 0)

    def test_skips_annotated_records(self, injector, logger):
        page = batch_page("Already linked", "Still open")
        injector.inject("https://arxiv.org/abs/0", "MR1000000", PlacementMode.COMPACT)
        resolver = FakeResolver()

        async def run():
            orchestrator = ResolutionOrchestrator(
                page, resolver, FakeVerifier(injector), injector, StaticSourceMode(), logger=logger
            )
            return await orchestrator.run_pass()

        stats = asyncio.run(run())
        assert [title for title, _ in resolver.calls] == ["Still open"]
        assert stats.records == 1

    def test_tries_candidates_in_order(self, injector, logger):
        page = batch_page("Two candidates")
        resolver = MagicMock()

        async def resolve(title, mode):
            return [Candidate("https://arxiv.org/abs/A", 0.95), Candidate("https://arxiv.org/abs/B", 0.85)]

        resolver.resolve = resolve
        verifier = MagicMock()
        seen = []

        async def verify(candidate, record, placement):
            seen.append(candidate.external_id)
            if candidate.external_id.endswith("B"):
                injector.inject(candidate.external_id, record.anchor, placement)
                return True
            return False

        verifier.verify = verify

        async def run():
            orchestrator = ResolutionOrchestrator(page, resolver, verifier, injector, StaticSourceMode(), logger=logger)
            result = await orchestrator.process_record(page.records[0], PlacementMode.COMPACT, SourceMode.AUTO)
            return result

        result = asyncio.run(run())
        assert seen == ["https://arxiv.org/abs/A", "https://arxiv.org/abs/B"]
        assert result.success is True
        assert result.external_id == "https://arxiv.org/abs/B"
        assert result.local_id == "MR1000000"


class TestSingleRecordPass:
    """Tests for passes over a single-record page."""

    def test_waits_for_late_record(self, injector, logger):
        ready = LocalRecord(title="Late title", local_id="MR7654321", anchor="MR7654321")
        source = SequenceSource([None, LocalRecord(title="Late title"), ready])
        sleep = FakeSleep()

        async def run():
            orchestrator = ResolutionOrchestrator(
                source, FakeResolver(), FakeVerifier(injector), injector, StaticSourceMode(), logger=logger, sleep=sleep
            )
            return await orchestrator.run_pass()

        stats = asyncio.run(run())
        assert sleep.intervals == [1.0, 1.0]
        assert (stats.kind, stats.records, stats.matched) == (PageKind.SINGLE, 1, 1)
        assert injector.results["MR7654321"].placement is PlacementMode.PROMINENT

    def test_gives_up_after_retries(self, injector, logger):
        source = SequenceSource([None])
        sleep = FakeSleep()
        resolver = FakeResolver()

        async def run():
            orchestrator = ResolutionOrchestrator(
                source, resolver, FakeVerifier(injector), injector, StaticSourceMode(), logger=logger, sleep=sleep
            )
            return await orchestrator.run_pass()

        stats = asyncio.run(run())
        assert len(sleep.intervals) == 15
        assert source.polls == 16
        assert stats.records == 0
        assert resolver.calls == []

    def test_annotated_single_record_skipped(self, injector, logger):
        ready = LocalRecord(title="Linked", local_id="MR7654321", anchor="MR7654321")
        injector.inject("https://arxiv.org/abs/0", "MR7654321", PlacementMode.PROMINENT)
        resolver = FakeResolver()

        async def run():
            orchestrator = ResolutionOrchestrator(
                SequenceSource([ready]), resolver, FakeVerifier(injector), injector, StaticSourceMode(), logger=logger
            )
            return await orchestrator.run_pass()

        stats = asyncio.run(run())
        assert resolver.calls == []
        assert stats.records == 0


class TestReentrancy:
    """Tests for trigger handling while a pass runs."""

    def test_triggers_during_pass_coalesce_into_one_trailing_pass(self, injector, logger):
        page = batch_page("Gated record")
        gate_holder = {}
        resolver = MagicMock()
        titles = []

        async def resolve(title, mode):
            titles.append(title)
            await gate_holder["gate"].wait()
            return []

        resolver.resolve = resolve

        async def run():
            gate_holder["gate"] = asyncio.Event()
            orchestrator = ResolutionOrchestrator(
                page, resolver, FakeVerifier(injector), injector, StaticSourceMode(), logger=logger
            )
            assert orchestrator.trigger("first") is True
            await asyncio.sleep(0)
            assert orchestrator.state is OrchestratorState.RUNNING
            assert orchestrator.trigger("second") is False
            assert orchestrator.state is OrchestratorState.RUNNING_WITH_PENDING
            assert orchestrator.trigger("third") is False
            assert orchestrator.state is OrchestratorState.RUNNING_WITH_PENDING
            gate_holder["gate"].set()
            await orchestrator.wait_idle()
            return orchestrator

        orchestrator = asyncio.run(run())
        assert orchestrator.passes_completed == 2
        assert orchestrator.state is OrchestratorState.IDLE
        assert titles == ["Gated record", "Gated record"]

    def test_trigger_without_event_loop_keeps_state(self, injector, logger):
        page = batch_page("Some title")
        orchestrator = ResolutionOrchestrator(
            page, FakeResolver(), FakeVerifier(injector), injector, StaticSourceMode(), logger=logger
        )
        with pytest.raises(RuntimeError):
            orchestrator.trigger("too early")
        assert orchestrator.state is OrchestratorState.IDLE

        async def run():
            return await orchestrator.run_pass()

        stats = asyncio.run(run())
        assert stats.matched == 1
        assert orchestrator.passes_completed == 1

    def test_failed_pass_returns_to_idle(self, injector, logger):
        source = MagicMock(spec=RecordSource)
        source.page_kind.side_effect = RuntimeError("page went away")

        async def run():
            orchestrator = ResolutionOrchestrator(
                source, FakeResolver(), FakeVerifier(injector), injector, StaticSourceMode(), logger=logger
            )
            stats = await orchestrator.run_pass()
            return orchestrator, stats

        orchestrator, stats = asyncio.run(run())
        assert stats is None
        assert orchestrator.is_idle
        assert orchestrator.passes_completed == 1

    def test_other_page_kind_does_nothing(self, injector, logger):
        resolver = FakeResolver()

        async def run():
            orchestrator = ResolutionOrchestrator(
                PageSnapshot(PageKind.OTHER, []), resolver, FakeVerifier(injector), injector, StaticSourceMode()
            )
            return await orchestrator.run_pass()

        stats = asyncio.run(run())
        assert stats.kind is PageKind.OTHER
        assert resolver.calls == []


class TestSourceMode:
    """Tests for source-mode handling."""

    def test_mode_provider_consulted_per_pass(self, injector, logger):
        page = batch_page("Some title")
        resolver = FakeResolver()
        modes = StaticSourceMode(SourceMode.PRIMARY_ONLY)

        async def run():
            orchestrator = ResolutionOrchestrator(
                page, resolver, FakeVerifier(injector, reject={"Some title"}), injector, modes, logger=logger
            )
            await orchestrator.run_pass()
            modes.update("secondary")
            await orchestrator.run_pass()

        asyncio.run(run())
        assert [mode for _, mode in resolver.calls] == [SourceMode.PRIMARY_ONLY, SourceMode.SECONDARY_ONLY]

    def test_pushed_mode_overrides_provider(self, injector, logger):
        page = batch_page("Some title")
        resolver = FakeResolver()

        async def run():
            orchestrator = ResolutionOrchestrator(
                page, resolver, FakeVerifier(injector), injector, StaticSourceMode(SourceMode.AUTO), logger=logger
            )
            orchestrator.update_source_mode(SourceMode.SECONDARY_ONLY)
            await orchestrator.run_pass()

        asyncio.run(run())
        assert resolver.calls == [("Some title", SourceMode.SECONDARY_ONLY)]

    def test_pushed_mode_applies_to_next_pass_only(self, injector, logger):
        page = batch_page("Some title")
        resolver = FakeResolver()
        modes = StaticSourceMode(SourceMode.AUTO)

        async def run():
            orchestrator = ResolutionOrchestrator(
                page, resolver, FakeVerifier(injector, reject={"Some title"}), injector, modes, logger=logger
            )
            orchestrator.update_source_mode(SourceMode.SECONDARY_ONLY)
            await orchestrator.run_pass()
            await orchestrator.run_pass()
            modes.update("primary")
            await orchestrator.run_pass()

        asyncio.run(run())
        assert [mode for _, mode in resolver.calls] == [
            SourceMode.SECONDARY_ONLY,
            SourceMode.AUTO,
            SourceMode.PRIMARY_ONLY,
        ]


class TestEndToEnd:
    """Full pipeline over fake HTTP."""

    @pytest.fixture
    def transport(self, fake_transport):
        def handler(url, kind):
            if kind is FetchKind.OPENALEX:
                return json.dumps({"results": [{"ids": {"arxiv": "http://arxiv.org/abs/2101.00001"}}]})
            if kind is FetchKind.ARXIV:
                return abs_page("Sparse recovery via l1-minimization", ["Jane Doe", "John Smith"])
            return ""

        return fake_transport(handler)

    def test_openalex_hit_verified_and_injected(self, transport, injector, logger, clock, make_record):
        record = make_record()
        page = PageSnapshot(PageKind.BATCH, [record])
        resolver = CandidateResolver(
            OpenAlexClient(transport, logger=logger, clock=clock),
            ArxivSearchClient(transport, logger=logger),
            logger=logger,
        )
        verifier = Verifier(transport, injector, logger=logger)

        async def run():
            orchestrator = ResolutionOrchestrator(page, resolver, verifier, injector, StaticSourceMode(), logger=logger)
            return await orchestrator.run_pass()

        stats = asyncio.run(run())
        assert stats.matched == 1
        assert list(injector.results) == ["MR1234567"]
        result = injector.results["MR1234567"]
        assert result.external_id == "https://arxiv.org/abs/2101.00001"
        assert result.placement is PlacementMode.COMPACT
        assert transport.calls_for(FetchKind.MREF) == []
        assert transport.calls_for(FetchKind.ARXIV) == ["https://arxiv.org/abs/2101.00001"]
