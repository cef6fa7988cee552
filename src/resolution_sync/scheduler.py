#!/usr/bin/env python3
"""Sync scheduling for the resolution sync service.

A ChainSynchronizer runs one fetch, decode, reduce and commit cycle for a
single chain. The SyncScheduler drives one synchronizer per chain on its own
polling interval.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .config import PollingConfig
from .errors import CycleDeadlineExceeded, UnknownEventType
from .models import ChainEvent, ChainEventKind, Checkpoint, DomainRecord, SourcePage
from .reducer import ReduceResult, StateReducer
from .store import ProjectionStore
from .utils.namehash import ROOT_NODES

# Get logger for this module
logger = logging.getLogger(__name__)


class EventSource(Protocol):
    chain: str

    @property
    def network_id(self) -> int: ...

    def initial_checkpoint(self) -> Checkpoint: ...

    async def fetch_since(self, checkpoint: Checkpoint, cursor: int | None = None) -> SourcePage: ...


class EventDecoder(Protocol):
    def decode(self, raw: Any) -> list[ChainEvent]: ...


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DECODING = "decoding"
    REDUCING = "reducing"
    COMMITTING = "committing"
    FAILED = "failed"


@dataclass
class CycleReport:
    """Summary of one synchronization cycle, handed to every listener.

    Attributes:
        chain: Chain the cycle ran for
        network_id: Network of that chain
        status: committed, idle, skipped or failed
        fetched: Raw records fetched
        applied: Events applied to named rows
        pending: Events held for nodes whose name is not known yet
        skipped: Events the reducer skipped
        unknown: Records of unrecognized event types
        checkpoint_before: Committed checkpoint when the cycle started
        checkpoint_after: Committed checkpoint when the cycle ended
        duration: Wall-clock seconds spent in the cycle
        error: The failure, for failed cycles
    """

    chain: str
    network_id: int
    status: str = "idle"
    fetched: int = 0
    applied: int = 0
    pending: int = 0
    skipped: int = 0
    unknown: int = 0
    checkpoint_before: Checkpoint | None = None
    checkpoint_after: Checkpoint | None = None
    duration: float = 0.0
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __str__(self) -> str:
        return (
            f"{self.chain}/{self.network_id} cycle {self.status}: "
            f"fetched={self.fetched} applied={self.applied} pending={self.pending} "
            f"skipped={self.skipped} unknown={self.unknown} checkpoint {self.checkpoint_before} -> "
            f"{self.checkpoint_after} in {self.duration:.2f}s"
        )


@dataclass
class _Batch:
    result: ReduceResult
    checkpoint: Checkpoint
    fetched: int
    unknown: list[Checkpoint] = field(default_factory=list)


def log_error(chain: str, error: BaseException) -> None:
    """Default error reporter."""
    logger.error(f"Sync cycle for {chain} failed: {error}", exc_info=error)


class ChainSynchronizer:
    """
    Runs synchronization cycles for one chain.

    A cycle fetches up to ``max_pages_per_cycle`` pages after the committed
    checkpoint, decodes and reduces them under the cycle deadline and then
    commits projection rows, audit events and the new checkpoint in one
    transaction. A failed cycle commits nothing.
    """

    def __init__(
        self,
        source: EventSource,
        decoder: EventDecoder,
        store: ProjectionStore,
        polling: PollingConfig,
        reducer: StateReducer | None = None,
        error_reporter: Callable[[str, BaseException], None] = log_error,
    ) -> None:
        self.source = source
        self.decoder = decoder
        self.store = store
        self.polling = polling
        self.reducer = reducer or StateReducer()
        self.error_reporter = error_reporter

        self.state = SyncState.IDLE
        self._listeners: list[Callable[[CycleReport], None]] = []
        self._running = False

        # Metrics tracking
        self.cycles_completed = 0
        self.cycles_failed = 0
        self.cycles_skipped = 0

    @property
    def chain(self) -> str:
        return self.source.chain

    @property
    def network_id(self) -> int:
        return self.source.network_id

    @property
    def is_running(self) -> bool:
        return self._running

    def add_listener(self, listener: Callable[[CycleReport], None]) -> None:
        self._listeners.append(listener)

    async def run_cycle(self) -> CycleReport:
        """Run one cycle; never raises for cycle failures."""
        report = CycleReport(chain=self.chain, network_id=self.network_id)
        if self._running:
            logger.warning(f"Previous {self.chain} cycle still running, skipping")
            self.cycles_skipped += 1
            report.status = "skipped"
            self._notify(report)
            return report

        self._running = True
        started = time.monotonic()
        try:
            await self._run(report)
            self.cycles_completed += 1
        except Exception as e:
            self.state = SyncState.FAILED
            self.cycles_failed += 1
            report.status = "failed"
            report.error = e
            report.checkpoint_after = report.checkpoint_before
            self.error_reporter(self.chain, e)
        finally:
            self.state = SyncState.IDLE
            self._running = False
            report.duration = time.monotonic() - started

        self._notify(report)
        return report

    async def _run(self, report: CycleReport) -> None:
        checkpoint = await asyncio.to_thread(
            self.store.get_checkpoint, self.chain, self.network_id
        )
        if checkpoint is None:
            checkpoint = self.source.initial_checkpoint()
        report.checkpoint_before = checkpoint

        try:
            batch = await asyncio.wait_for(
                self._prepare(checkpoint), timeout=self.polling.cycle_deadline
            )
        except asyncio.TimeoutError:
            raise CycleDeadlineExceeded(
                f"{self.chain} cycle exceeded {self.polling.cycle_deadline}s "
                f"while {self.state.value}"
            ) from None

        result = batch.result
        report.fetched = batch.fetched
        report.applied = result.applied_count
        report.pending = len(result.pending)
        report.skipped = len(result.skipped)
        report.unknown = len(batch.unknown)

        unnamed = result.unnamed
        if unnamed:
            logger.info(
                f"Holding state for {len(unnamed)} {self.chain} nodes until their naming event"
            )

        if not result.applied and not result.pending and batch.checkpoint == checkpoint:
            report.checkpoint_after = checkpoint
            return

        self.state = SyncState.COMMITTING
        await asyncio.to_thread(
            self.store.commit,
            self.chain,
            self.network_id,
            result.rows,
            batch.checkpoint,
            sorted([*result.applied, *result.pending], key=lambda e: e.sort_key),
            unnamed,
        )
        report.status = "committed"
        report.checkpoint_after = batch.checkpoint

    async def _prepare(self, checkpoint: Checkpoint) -> _Batch:
        self.state = SyncState.FETCHING
        records: list[Any] = []
        high_water: Checkpoint | None = None
        cursor: int | None = None
        for _ in range(self.polling.max_pages_per_cycle):
            page = await self.source.fetch_since(checkpoint, cursor)
            records.extend(page.records)
            if page.high_water is not None:
                high_water = page.high_water
            cursor = page.next_cursor
            if cursor is None:
                break

        self.state = SyncState.DECODING
        events: list[ChainEvent] = []
        unknown: list[Checkpoint] = []
        for raw in records:
            try:
                events.extend(self.decoder.decode(raw))
            except UnknownEventType as e:
                logger.warning(f"Skipping record on {self.chain}: {e}")
                if e.position is not None:
                    unknown.append(e.position)

        self.state = SyncState.REDUCING
        snapshot = await asyncio.to_thread(self.load_snapshot, events)
        result = self.reducer.apply(snapshot, events, checkpoint)

        positions = [checkpoint, result.checkpoint, *unknown]
        if high_water is not None:
            positions.append(high_water)
        return _Batch(
            result=result,
            checkpoint=max(positions),
            fetched=len(records),
            unknown=unknown,
        )

    def load_snapshot(self, events: Sequence[ChainEvent]) -> dict[str, DomainRecord]:
        """Load every committed row the batch can read or write."""
        nodes: set[str] = set()
        names: set[str] = set()
        for event in events:
            nodes.add(event.node)
            if parent := event.payload.get("parent"):
                nodes.add(parent)
            if event.kind is ChainEventKind.NEW_URI:
                names.add(event.payload["name"])

        snapshot = self.store.get_pending(nodes)
        snapshot.update(self.store.get_many_by_node(nodes))

        # ZNS child names are only known once the parent row is loaded
        for event in events:
            if event.kind is not ChainEventKind.NEW_DOMAIN:
                continue
            parent = event.payload["parent"]
            parent_name = ROOT_NODES.get(parent)
            if parent_name is None and parent in snapshot:
                parent_name = snapshot[parent].name
            if parent_name is not None:
                names.add(f"{event.payload['label']}.{parent_name}")

        snapshot.update(self.store.get_many_by_name(names))
        return snapshot

    def _notify(self, report: CycleReport) -> None:
        for listener in self._listeners:
            try:
                listener(report)
            except Exception as e:
                logger.error(f"Cycle listener failed: {e}", exc_info=True)

    def get_metrics(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "cycles_completed": self.cycles_completed,
            "cycles_failed": self.cycles_failed,
            "cycles_skipped": self.cycles_skipped,
        }


class SyncScheduler:
    """
    Drives one synchronizer per chain on its polling interval.

    Chains run as independent tasks; a tick that finds the previous cycle of
    the same chain still running is skipped, not queued.
    """

    def __init__(self, synchronizers: Iterable[ChainSynchronizer]) -> None:
        self.synchronizers = list(synchronizers)
        self.running = False
        self.shutdown_event = asyncio.Event()

    async def run_once(self) -> list[CycleReport]:
        """Run a single cycle for every chain concurrently."""
        return list(await asyncio.gather(*(s.run_cycle() for s in self.synchronizers)))

    async def _tick_loop(self, synchronizer: ChainSynchronizer) -> None:
        interval = synchronizer.polling.interval
        cycle: asyncio.Task | None = None
        logger.info(f"Starting {synchronizer.chain} sync every {interval} seconds")
        try:
            while not self.shutdown_event.is_set():
                if cycle is None or cycle.done():
                    cycle = asyncio.create_task(synchronizer.run_cycle())
                else:
                    logger.warning(f"{synchronizer.chain} cycle overran its interval, skipping tick")
                    synchronizer.cycles_skipped += 1

                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if cycle is not None and not cycle.done():
                cycle.cancel()
                try:
                    await cycle
                except asyncio.CancelledError:
                    pass

    async def run(self) -> None:
        """Run until stop() is called."""
        if not self.synchronizers:
            raise RuntimeError("No chain synchronizers configured")

        self.running = True
        self.shutdown_event.clear()
        tasks = {
            s.chain: asyncio.create_task(self._tick_loop(s), name=f"sync-{s.chain}")
            for s in self.synchronizers
        }
        logger.info(f"Sync scheduler started for {', '.join(tasks)}")

        try:
            await self.shutdown_event.wait()
        finally:
            self.running = False
            self.shutdown_event.set()
            for task in tasks.values():
                if not task.done():
                    task.cancel()
            for name, task in tasks.items():
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.error(f"{name} sync task failed: {e}", exc_info=True)
            logger.info("Sync scheduler stopped")

    def stop(self) -> None:
        """Stop the scheduler."""
        self.running = False
        self.shutdown_event.set()
