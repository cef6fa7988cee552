#!/usr/bin/env python3
"""State reducer for the resolution sync service.

The reducer applies an ordered batch of decoded chain events to a snapshot
of the domain projection. It performs no I/O: the caller loads the snapshot
and persists the result.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from .models import Blockchain, ChainEvent, ChainEventKind, Checkpoint, DomainRecord
from .utils.namehash import ROOT_NODES, is_burn_address

# Get logger for this module
logger = logging.getLogger(__name__)


@dataclass
class ReduceResult:
    """Outcome of applying one batch.

    Attributes:
        projection: Snapshot after the batch, keyed by node
        checkpoint: Highest position covered by the batch
        applied: Events whose effect landed on a named row
        pending: Events held on a node whose naming event has not arrived
        skipped: Stale, duplicate or non-governing events
        touched: Names of the rows the batch wrote to
    """

    projection: dict[str, DomainRecord]
    checkpoint: Checkpoint
    applied: list[ChainEvent] = field(default_factory=list)
    pending: list[ChainEvent] = field(default_factory=list)
    skipped: list[ChainEvent] = field(default_factory=list)
    touched: set[str] = field(default_factory=set)

    @property
    def applied_count(self) -> int:
        return len(self.applied)

    @property
    def rows(self) -> list[DomainRecord]:
        """Named rows written by the batch, ready to persist."""
        return [
            record
            for record in self.projection.values()
            if record.name is not None and record.name in self.touched
        ]

    @property
    def unnamed(self) -> list[DomainRecord]:
        """Placeholder rows changed by the batch, still waiting for a name."""
        nodes = {event.node for event in self.pending}
        return [
            record
            for node, record in self.projection.items()
            if record.name is None and node in nodes
        ]


class StateReducer:
    """Applies chain events to the domain projection.

    Events are applied in ascending (block_number, sequence, event_index)
    order. Events at or before the incoming checkpoint are skipped, which
    makes re-applying an already committed batch a no-op.
    """

    def __init__(self) -> None:
        self._handlers: dict[
            ChainEventKind, Callable[[DomainRecord, ChainEvent], None]
        ] = {
            ChainEventKind.TRANSFER: self._transfer,
            ChainEventKind.RESOLVER_CHANGED: self._resolver_changed,
            ChainEventKind.SET_RECORD: self._set_record,
            ChainEventKind.SET_RECORDS: self._set_records,
            ChainEventKind.RESET_RECORDS: self._reset_records,
            ChainEventKind.CONFIGURED: self._configured,
            ChainEventKind.REGISTRY_CHANGED: self._registry_changed,
        }

    def apply(
        self,
        snapshot: Mapping[str, DomainRecord],
        events: Iterable[ChainEvent],
        checkpoint: Checkpoint,
    ) -> ReduceResult:
        """Apply ``events`` to a copy of ``snapshot``.

        Args:
            snapshot: Current rows keyed by node
            events: Decoded events in any order
            checkpoint: Position of the last committed event for this chain

        Returns:
            ReduceResult with the new projection and bookkeeping
        """
        projection = {node: record.copy() for node, record in snapshot.items()}
        result = ReduceResult(projection=projection, checkpoint=checkpoint)
        seen: set[tuple[str, int, str, int, int]] = set()

        for event in sorted(events, key=lambda e: e.sort_key):
            if event.position <= checkpoint or event.dedup_key in seen:
                result.skipped.append(event)
                continue
            seen.add(event.dedup_key)
            result.checkpoint = max(result.checkpoint, event.position)

            if self._apply_one(projection, event, result.touched):
                result.applied.append(event)
            else:
                result.skipped.append(event)

        # A naming event later in the batch may have adopted the placeholder
        applied = result.applied
        result.applied = []
        for event in applied:
            record = projection.get(event.node)
            if record is not None and record.name is None:
                result.pending.append(event)
            else:
                result.applied.append(event)

        return result

    def _apply_one(
        self,
        projection: dict[str, DomainRecord],
        event: ChainEvent,
        touched: set[str],
    ) -> bool:
        if event.kind.is_naming:
            return self._name_domain(projection, event, touched)

        record = projection.get(event.node)
        if record is None:
            # Mints emit Transfer before NewURI; hold state until the name arrives
            record = DomainRecord(
                name=None,
                node=event.node,
                blockchain=event.blockchain,
                network_id=event.network_id,
                registry=event.registry,
            )
            projection[event.node] = record
        elif not self._governs(record, event):
            logger.warning(
                f"Skipping {event}: {record.name} is governed by "
                f"{record.blockchain.value} registry {record.registry}"
            )
            return False

        if event.kind is ChainEventKind.REGISTRY_CHANGED and not self._outranks(record, event):
            return False

        self._handlers[event.kind](record, event)
        if record.name is not None:
            touched.add(record.name)
        return True

    def _name_domain(
        self,
        projection: dict[str, DomainRecord],
        event: ChainEvent,
        touched: set[str],
    ) -> bool:
        name = self._resolve_name(projection, event)
        if name is None:
            logger.warning(f"Skipping {event}: parent domain is unknown")
            return False

        by_node = projection.get(event.node)
        by_name = next((row for row in projection.values() if row.name == name), None)

        if by_node is not None and by_node.name is not None and by_node.name != name:
            logger.warning(f"Skipping {event}: node already names {by_node.name}")
            return False

        if by_name is None:
            if by_node is None:
                projection[event.node] = DomainRecord(
                    name=name,
                    node=event.node,
                    blockchain=event.blockchain,
                    network_id=event.network_id,
                    registry=event.registry,
                )
            else:
                # Placeholder created by earlier events of the same mint
                by_node.name = name
        elif by_name.registry is not None and by_name.registry != event.registry:
            if not self._outranks(by_name, event):
                logger.warning(
                    f"Skipping {event}: {name} already migrated to "
                    f"{by_name.blockchain.value}"
                )
                return False
            self._migrate(projection, by_name, by_node, event)

        touched.add(name)
        return True

    def _migrate(
        self,
        projection: dict[str, DomainRecord],
        record: DomainRecord,
        placeholder: DomainRecord | None,
        event: ChainEvent,
    ) -> None:
        """Move ``record`` under the registry that emitted ``event``."""
        logger.info(
            f"Migrating {record.name} from {record.blockchain.value} "
            f"to {event.blockchain.value}"
        )
        del projection[record.node]
        record.node = event.node
        self._registry_changed(record, event)

        # Events the new registry emitted before naming the domain
        if placeholder is not None:
            if placeholder.owner_address is not None:
                record.owner_address = placeholder.owner_address
            if placeholder.resolver is not None:
                record.resolver = placeholder.resolver
            record.resolution.update(placeholder.resolution)
        projection[event.node] = record

    @staticmethod
    def _resolve_name(projection: Mapping[str, DomainRecord], event: ChainEvent) -> str | None:
        if event.kind is ChainEventKind.NEW_URI:
            return event.payload["name"]

        parent = event.payload["parent"]
        parent_name = ROOT_NODES.get(parent)
        if parent_name is None and (parent_record := projection.get(parent)) is not None:
            parent_name = parent_record.name
        if parent_name is None:
            return None
        return f"{event.payload['label']}.{parent_name}"

    @staticmethod
    def _governs(record: DomainRecord, event: ChainEvent) -> bool:
        if event.kind is ChainEventKind.REGISTRY_CHANGED:
            return True
        return record.registry is None or record.registry == event.registry

    @staticmethod
    def _outranks(record: DomainRecord, event: ChainEvent) -> bool:
        """Whether ``event``'s registry may take over ``record``."""
        target = Blockchain(event.payload.get("blockchain", event.blockchain))
        return target.rank >= record.blockchain.rank

    @staticmethod
    def _transfer(record: DomainRecord, event: ChainEvent) -> None:
        owner = event.payload["owner"]
        if is_burn_address(owner):
            record.owner_address = None
            record.resolver = None
        else:
            record.owner_address = owner.lower()

    @staticmethod
    def _resolver_changed(record: DomainRecord, event: ChainEvent) -> None:
        resolver = event.payload["resolver"]
        record.resolver = None if is_burn_address(resolver) else resolver.lower()

    @staticmethod
    def _set_record(record: DomainRecord, event: ChainEvent) -> None:
        record.resolution[event.payload["key"]] = event.payload["value"]

    @staticmethod
    def _set_records(record: DomainRecord, event: ChainEvent) -> None:
        records = event.payload["records"]
        # Build the merged mapping first so a bad entry leaves the row untouched
        merged = dict(record.resolution)
        for key, value in records.items():
            merged[str(key)] = str(value)
        record.resolution = merged

    @staticmethod
    def _reset_records(record: DomainRecord, event: ChainEvent) -> None:
        record.resolution = {}

    @staticmethod
    def _configured(record: DomainRecord, event: ChainEvent) -> None:
        owner = event.payload["owner"]
        resolver = event.payload["resolver"]
        record.owner_address = None if is_burn_address(owner) else owner.lower()
        record.resolver = None if is_burn_address(resolver) else resolver.lower()
        records = event.payload.get("records")
        if records is not None:
            record.resolution = {str(key): str(value) for key, value in records.items()}

    @staticmethod
    def _registry_changed(record: DomainRecord, event: ChainEvent) -> None:
        record.registry = event.payload.get("registry", event.registry)
        record.blockchain = Blockchain(event.payload.get("blockchain", event.blockchain))
        record.network_id = int(event.payload.get("network_id", event.network_id))
