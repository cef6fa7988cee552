#!/usr/bin/env python3
"""Data models for the resolution sync service.

This module provides the value types shared by the event sources, decoders,
reducer and store: decoded chain events, checkpoints, domain projection rows
and the pages returned by the event sources.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

# logIndex never reaches this value, so (block, END_OF_BLOCK) sorts after
# every event in the block.
END_OF_BLOCK = 2**31 - 1


class Blockchain(str, Enum):
    """Registry family that governs a domain."""

    ZNS = "ZNS"
    CNS = "CNS"
    UNS = "UNS"

    @property
    def rank(self) -> int:
        """Governance rank; domains only migrate towards a higher rank."""
        return _BLOCKCHAIN_RANK[self]


_BLOCKCHAIN_RANK = {Blockchain.ZNS: 0, Blockchain.CNS: 1, Blockchain.UNS: 2}


class ChainEventKind(str, Enum):
    """Kinds of decoded chain events the reducer knows how to apply."""

    NEW_URI = "NewURI"
    NEW_DOMAIN = "NewDomain"
    TRANSFER = "Transfer"
    RESOLVER_CHANGED = "ResolverChanged"
    SET_RECORD = "SetRecord"
    SET_RECORDS = "SetRecords"
    RESET_RECORDS = "ResetRecords"
    CONFIGURED = "Configured"
    REGISTRY_CHANGED = "RegistryChanged"

    @property
    def is_naming(self) -> bool:
        return self in (ChainEventKind.NEW_URI, ChainEventKind.NEW_DOMAIN)


@dataclass(frozen=True, slots=True, order=True)
class Checkpoint:
    """High-water mark of the last fully applied position on a chain.

    Attributes:
        block_number: Block of the last applied position
        sequence: logIndex (EVM) or atxuid (Zilliqa) of that position
    """

    block_number: int
    sequence: int

    @classmethod
    def end_of_block(cls, block_number: int) -> "Checkpoint":
        """Position covering every event up to and including ``block_number``."""
        return cls(block_number, END_OF_BLOCK)

    @property
    def covers_block(self) -> bool:
        return self.sequence == END_OF_BLOCK

    def __str__(self) -> str:
        if self.covers_block:
            return f"({self.block_number}, end)"
        return f"({self.block_number}, {self.sequence})"


@dataclass(frozen=True, slots=True)
class ChainEvent:
    """A decoded registry event.

    Attributes:
        kind: Which reducer rule applies
        blockchain: Registry family that emitted the event
        network_id: Numeric network identifier
        registry: Lower-cased address of the emitting registry
        block_number: Block (or Zilliqa block height) of the event
        sequence: logIndex for EVM logs, atxuid for Zilliqa transactions
        transaction_hash: Hash of the transaction that emitted the event
        node: Namehash of the domain the event refers to
        payload: Kind-specific fields (owner, resolver, key/value, ...)
        event_index: Position of the event inside a Zilliqa transaction
    """

    kind: ChainEventKind
    blockchain: Blockchain
    network_id: int
    registry: str
    block_number: int
    sequence: int
    transaction_hash: str
    node: str
    payload: dict[str, Any] = field(default_factory=dict)
    event_index: int = 0

    def __str__(self) -> str:
        return (
            f"ChainEvent({self.kind.value}, "
            f"node={self.node[:10]}..., "
            f"at={self.block_number}/{self.sequence}/{self.event_index})"
        )

    @property
    def ordering_key(self) -> tuple[int, int]:
        return (self.block_number, self.sequence)

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (self.block_number, self.sequence, self.event_index)

    @property
    def dedup_key(self) -> tuple[str, int, str, int, int]:
        """Key under which a redelivered event is recognized."""
        return (
            self.blockchain.value,
            self.network_id,
            self.transaction_hash,
            self.sequence,
            self.event_index,
        )

    @property
    def position(self) -> Checkpoint:
        return Checkpoint(self.block_number, self.sequence)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind.value,
            "blockchain": self.blockchain.value,
            "network_id": self.network_id,
            "registry": self.registry,
            "block_number": self.block_number,
            "sequence": self.sequence,
            "event_index": self.event_index,
            "transaction_hash": self.transaction_hash,
            "node": self.node,
            "payload": dict(self.payload),
        }


@dataclass(slots=True)
class DomainRecord:
    """Current resolution state of one domain.

    A record whose ``name`` is None is a placeholder for a node that has
    received events before its naming event; it is stored as pending state
    and never as a projection row.
    """

    name: str | None
    node: str
    blockchain: Blockchain
    network_id: int
    owner_address: str | None = None
    resolver: str | None = None
    registry: str | None = None
    resolution: dict[str, str] = field(default_factory=dict)

    def copy(self) -> "DomainRecord":
        return replace(self, resolution=dict(self.resolution))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "node": self.node,
            "blockchain": self.blockchain.value,
            "network_id": self.network_id,
            "owner_address": self.owner_address,
            "resolver": self.resolver,
            "registry": self.registry,
            "resolution": dict(self.resolution),
        }


@dataclass(frozen=True, slots=True)
class SourcePage:
    """One bounded page of raw records returned by an event source.

    Attributes:
        records: Raw chain records in ascending chain order
        next_cursor: Continuation marker, None once the source is exhausted
        high_water: Position this page fully covers, None if it covers nothing
    """

    records: list[Any]
    next_cursor: int | None = None
    high_water: Checkpoint | None = None
