"""Resolution orchestrator: drives resolve -> verify over the records of a page.

Re-entrancy is handled by an explicit state machine:

    IDLE                 --trigger-->   RUNNING               (a pass starts)
    RUNNING              --trigger-->   RUNNING_WITH_PENDING
    RUNNING_WITH_PENDING --trigger-->   RUNNING_WITH_PENDING  (absorbed)
    RUNNING              --pass done--> IDLE
    RUNNING_WITH_PENDING --pass done--> RUNNING               (one trailing pass)

At most one pass runs at a time and at most one trailing pass is remembered,
so the last trigger always gets a pass that sees the current page.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from arxiv_linker.base import Injector, RecordSource, SourceModeProvider
from arxiv_linker.models import InjectionResult, LocalRecord, PageKind, PlacementMode, SourceMode
from arxiv_linker.sources import CandidateResolver
from arxiv_linker.verifier import Verifier


class OrchestratorState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    RUNNING_WITH_PENDING = "running_with_pending"


class OrchestratorEvent(Enum):
    TRIGGER = "trigger"
    PASS_DONE = "pass_done"


TRANSITIONS: dict[tuple[OrchestratorState, OrchestratorEvent], OrchestratorState] = {
    (OrchestratorState.IDLE, OrchestratorEvent.TRIGGER): OrchestratorState.RUNNING,
    (OrchestratorState.RUNNING, OrchestratorEvent.TRIGGER): OrchestratorState.RUNNING_WITH_PENDING,
    (OrchestratorState.RUNNING_WITH_PENDING, OrchestratorEvent.TRIGGER): OrchestratorState.RUNNING_WITH_PENDING,
    (OrchestratorState.RUNNING, OrchestratorEvent.PASS_DONE): OrchestratorState.IDLE,
    (OrchestratorState.RUNNING_WITH_PENDING, OrchestratorEvent.PASS_DONE): OrchestratorState.RUNNING,
}


@dataclass
class PassStats:
    """Summary of one orchestrator pass."""

    kind: PageKind
    records: int = 0
    matched: int = 0
    failed: int = 0


class ResolutionOrchestrator:
    """Runs resolution passes over the records supplied by a RecordSource.

    Must be triggered from the event loop thread; all passes run as tasks on
    that loop.
    """

    def __init__(
        self,
        records: RecordSource,
        resolver: CandidateResolver,
        verifier: Verifier,
        injector: Injector,
        mode_provider: SourceModeProvider,
        logger: logging.Logger | None = None,
        single_record_retries: int = 15,
        single_record_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.records = records
        self.resolver = resolver
        self.verifier = verifier
        self.injector = injector
        self.mode_provider = mode_provider
        self.logger = logger or logging.getLogger(__name__)
        self.single_record_retries = single_record_retries
        self.single_record_interval = single_record_interval
        self._sleep = sleep

        self.state = OrchestratorState.IDLE
        self.passes_completed = 0
        self.last_stats: PassStats | None = None
        self._pushed_mode: SourceMode | None = None
        self._task: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    # --- State machine ---

    def _transition(self, event: OrchestratorEvent) -> OrchestratorState:
        previous = self.state
        self.state = TRANSITIONS[(previous, event)]
        self.logger.debug("Orchestrator %s: %s -> %s", event.value, previous.value, self.state.value)
        return previous

    @property
    def is_idle(self) -> bool:
        return self.state is OrchestratorState.IDLE

    def trigger(self, reason: str = "explicit") -> bool:
        """Request a pass. Returns True if a new pass was started now.

        While a pass is running the request is remembered (once) and served
        by a trailing pass.

        Raises:
            RuntimeError: If called outside a running event loop (state unchanged)
        """
        loop = asyncio.get_running_loop()
        previous = self._transition(OrchestratorEvent.TRIGGER)
        if previous is not OrchestratorState.IDLE:
            self.logger.debug("Pass already running, deferring trigger (%s)", reason)
            return False
        self.logger.debug("Starting pass (%s)", reason)
        self._idle.clear()
        self._task = loop.create_task(self._drive())
        return True

    async def wait_idle(self) -> None:
        """Wait until no pass is running or pending."""
        await self._idle.wait()

    async def run_pass(self, reason: str = "explicit") -> PassStats | None:
        """Trigger a pass and wait for it (and any trailing pass) to finish."""
        self.trigger(reason)
        await self.wait_idle()
        return self.last_stats

    def update_source_mode(self, mode: SourceMode) -> None:
        """Use ``mode`` for the next pass only; later passes read the mode provider again."""
        self._pushed_mode = mode

    async def _drive(self) -> None:
        try:
            while True:
                try:
                    self.last_stats = await self._run_pass()
                except Exception as e:
                    self.logger.error("Resolution pass failed: %s", e)
                self.passes_completed += 1
                self._transition(OrchestratorEvent.PASS_DONE)
                if self.state is OrchestratorState.IDLE:
                    break
        finally:
            self.state = OrchestratorState.IDLE
            self._idle.set()

    # --- Passes ---

    def _current_mode(self) -> SourceMode:
        if self._pushed_mode is not None:
            mode, self._pushed_mode = self._pushed_mode, None
            return mode
        return self.mode_provider.current_source_mode()

    async def _run_pass(self) -> PassStats:
        mode = self._current_mode()
        kind = self.records.page_kind()
        if kind is PageKind.BATCH:
            stats = await self._run_batch(mode)
        elif kind is PageKind.SINGLE:
            stats = await self._run_single(mode)
        else:
            stats = PassStats(kind=kind)
        self.logger.info(
            "Pass done (%s, %s): records=%d, matched=%d, failed=%d",
            kind.value,
            mode.value,
            stats.records,
            stats.matched,
            stats.failed,
        )
        return stats

    async def _run_batch(self, mode: SourceMode) -> PassStats:
        pending = [r for r in self.records.list_records() if r.is_ready and not self.injector.is_annotated(r.anchor)]
        results = await asyncio.gather(
            *(self._process_record_safely(record, PlacementMode.COMPACT, mode) for record in pending)
        )
        return PassStats(
            kind=PageKind.BATCH,
            records=len(pending),
            matched=sum(1 for r in results if r is not None and r.success),
            failed=sum(1 for r in results if r is None),
        )

    async def _run_single(self, mode: SourceMode) -> PassStats:
        record = self.records.current_record()
        attempts = 0
        while (record is None or not record.is_ready) and attempts < self.single_record_retries:
            await self._sleep(self.single_record_interval)
            record = self.records.current_record()
            attempts += 1

        stats = PassStats(kind=PageKind.SINGLE)
        if record is None or not record.is_ready:
            self.logger.debug("Record not rendered after %d attempts, giving up", attempts)
            return stats
        if self.injector.is_annotated(record.anchor):
            return stats

        result = await self._process_record_safely(record, PlacementMode.PROMINENT, mode)
        stats.records = 1
        stats.matched = int(result is not None and result.success)
        stats.failed = int(result is None)
        return stats

    async def _process_record_safely(
        self, record: LocalRecord, placement: PlacementMode, mode: SourceMode
    ) -> InjectionResult | None:
        try:
            return await self.process_record(record, placement, mode)
        except Exception as e:
            self.logger.error("Resolution failed for %s: %s", record.local_id or record.title, e)
            return None

    async def process_record(self, record: LocalRecord, placement: PlacementMode, mode: SourceMode) -> InjectionResult:
        """Resolve candidates for one record and verify them in order until one is accepted."""
        candidates = await self.resolver.resolve(record.title, mode)
        for candidate in candidates:
            if await self.verifier.verify(candidate, record, placement):
                return InjectionResult(
                    success=True,
                    placement=placement,
                    external_id=candidate.external_id,
                    local_id=record.local_id,
                )
        self.logger.debug("%s: no match among %d candidate(s)", record.local_id, len(candidates))
        return InjectionResult(success=False, placement=placement, local_id=record.local_id)
