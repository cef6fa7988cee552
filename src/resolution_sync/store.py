#!/usr/bin/env python3
"""Projection and checkpoint storage for the resolution sync service.

The store owns four tables: ``domains`` (the projection served to the read
API), ``pending_nodes`` (state of nodes whose name is not known yet),
``sync_checkpoints`` (one high-water mark per chain and network) and
``chain_events`` (the audit trail of applied events). A commit writes all of
them in a single transaction.
"""

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Engine,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ConstraintViolation, StoreUnavailable
from .models import Blockchain, ChainEvent, Checkpoint, DomainRecord
from .utils.namehash import namehash_for

# Get logger for this module
logger = logging.getLogger(__name__)

MAX_PER_PAGE = 200


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class DomainRow(Base):
    """Current resolution state of one domain."""

    __tablename__ = "domains"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    node: Mapped[str] = mapped_column(String(66), nullable=False, unique=True, index=True)
    blockchain: Mapped[str] = mapped_column(String(8), nullable=False, index=True)
    network_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    owner_address: Mapped[str | None] = mapped_column(String(66), nullable=True, index=True)
    resolver: Mapped[str | None] = mapped_column(String(66), nullable=True)
    registry_address: Mapped[str | None] = mapped_column("registry", String(66), nullable=True)
    resolution: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def to_record(self) -> DomainRecord:
        return DomainRecord(
            name=self.name,
            node=self.node,
            blockchain=Blockchain(self.blockchain),
            network_id=self.network_id,
            owner_address=self.owner_address,
            resolver=self.resolver,
            registry=self.registry_address,
            resolution=dict(self.resolution or {}),
        )


class PendingNodeRow(Base):
    """State held for a node whose naming event has not been seen yet.

    Domains minted before the start block only ever show up through later
    mutations; their state waits here until a naming event arrives.
    """

    __tablename__ = "pending_nodes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    node: Mapped[str] = mapped_column(String(66), nullable=False, unique=True, index=True)
    blockchain: Mapped[str] = mapped_column(String(8), nullable=False)
    network_id: Mapped[int] = mapped_column(Integer, nullable=False)
    owner_address: Mapped[str | None] = mapped_column(String(66), nullable=True)
    resolver: Mapped[str | None] = mapped_column(String(66), nullable=True)
    registry_address: Mapped[str | None] = mapped_column("registry", String(66), nullable=True)
    resolution: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def to_record(self) -> DomainRecord:
        return DomainRecord(
            name=None,
            node=self.node,
            blockchain=Blockchain(self.blockchain),
            network_id=self.network_id,
            owner_address=self.owner_address,
            resolver=self.resolver,
            registry=self.registry_address,
            resolution=dict(self.resolution or {}),
        )


class CheckpointRow(Base):
    """Last fully applied position of one chain."""

    __tablename__ = "sync_checkpoints"
    __table_args__ = (UniqueConstraint("chain", "network_id", name="uq_checkpoint_chain"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(16), nullable=False)
    network_id: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class ChainEventRow(Base):
    """Audit record of one applied chain event."""

    __tablename__ = "chain_events"
    __table_args__ = (
        UniqueConstraint(
            "blockchain",
            "network_id",
            "transaction_hash",
            "sequence",
            "event_index",
            name="uq_chain_event",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    blockchain: Mapped[str] = mapped_column(String(8), nullable=False)
    network_id: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    node: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    registry_address: Mapped[str] = mapped_column("registry", String(66), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class ProjectionStore:
    """SQLAlchemy-backed projection, checkpoint and audit store.

    All methods are synchronous; the scheduler calls them from a worker
    thread. Reads always go to the database, there is no cache.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "ProjectionStore":
        """Create a store for ``url``; in-memory SQLite shares one connection."""
        if url in ("sqlite://", "sqlite:///:memory:"):
            engine = create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        elif url.startswith("sqlite"):
            engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
        else:
            engine = create_engine(url, echo=echo, pool_pre_ping=True)
        return cls(engine)

    def create_schema(self) -> None:
        with self._errors("create schema"):
            Base.metadata.create_all(self.engine)

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except IntegrityError as e:
            raise ConstraintViolation(f"Failed to {operation}: {e.orig}") from e
        except OperationalError as e:
            raise StoreUnavailable(f"Failed to {operation}: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Failed to {operation}: {e}") from e

    # ------------------------------------------------------------------
    # Read contract
    # ------------------------------------------------------------------

    def get_checkpoint(self, chain: str, network_id: int) -> Checkpoint | None:
        with self._errors("read checkpoint"), self._session_factory() as session:
            row = self._checkpoint_row(session, chain, network_id)
            if row is None:
                return None
            return Checkpoint(row.block_number, row.sequence)

    def get_by_name(self, name: str) -> DomainRecord | None:
        with self._errors("read domain"), self._session_factory() as session:
            row = session.scalar(select(DomainRow).where(DomainRow.name == name.lower()))
            return row.to_record() if row else None

    def get_by_node(self, node: str) -> DomainRecord | None:
        with self._errors("read domain"), self._session_factory() as session:
            row = session.scalar(select(DomainRow).where(DomainRow.node == node.lower()))
            return row.to_record() if row else None

    def get_many_by_node(self, nodes: Iterable[str]) -> dict[str, DomainRecord]:
        nodes = {node.lower() for node in nodes}
        if not nodes:
            return {}
        with self._errors("read domains"), self._session_factory() as session:
            rows = session.scalars(select(DomainRow).where(DomainRow.node.in_(nodes)))
            return {row.node: row.to_record() for row in rows}

    def get_many_by_name(self, names: Iterable[str]) -> dict[str, DomainRecord]:
        """Rows for ``names``, keyed by node like the reducer snapshot."""
        names = {name.lower() for name in names}
        if not names:
            return {}
        with self._errors("read domains"), self._session_factory() as session:
            rows = session.scalars(select(DomainRow).where(DomainRow.name.in_(names)))
            return {row.node: row.to_record() for row in rows}

    def get_pending(self, nodes: Iterable[str]) -> dict[str, DomainRecord]:
        """Unnamed placeholder state for ``nodes``, keyed by node."""
        nodes = {node.lower() for node in nodes}
        if not nodes:
            return {}
        with self._errors("read pending nodes"), self._session_factory() as session:
            rows = session.scalars(select(PendingNodeRow).where(PendingNodeRow.node.in_(nodes)))
            return {row.node: row.to_record() for row in rows}

    def list_domains(
        self,
        owners: Iterable[str] | None = None,
        blockchains: Iterable[Blockchain | str] | None = None,
        network_ids: Iterable[int] | None = None,
        page: int = 1,
        per_page: int = 100,
    ) -> list[DomainRecord]:
        """Page of domains matching every given filter, ordered by name.

        Raises:
            ValueError: If ``page`` or ``per_page`` is out of range
        """
        if page < 1:
            raise ValueError(f"Page must be at least 1, got {page}")
        if not 1 <= per_page <= MAX_PER_PAGE:
            raise ValueError(f"Per page must be within 1-{MAX_PER_PAGE}, got {per_page}")

        query = select(DomainRow)
        if owners is not None:
            query = query.where(DomainRow.owner_address.in_([o.lower() for o in owners]))
        if blockchains is not None:
            query = query.where(
                DomainRow.blockchain.in_([Blockchain(b).value for b in blockchains])
            )
        if network_ids is not None:
            query = query.where(DomainRow.network_id.in_(list(network_ids)))
        query = query.order_by(DomainRow.name).offset((page - 1) * per_page).limit(per_page)

        with self._errors("list domains"), self._session_factory() as session:
            return [row.to_record() for row in session.scalars(query)]

    # ------------------------------------------------------------------
    # Write contract
    # ------------------------------------------------------------------

    def commit(
        self,
        chain: str,
        network_id: int,
        records: Iterable[DomainRecord],
        checkpoint: Checkpoint,
        events: Iterable[ChainEvent] = (),
        pending: Iterable[DomainRecord] = (),
    ) -> None:
        """Persist projection rows, pending state, audit events and checkpoint atomically.

        Naming a node clears its pending state in the same transaction.

        Raises:
            ConstraintViolation: If a row breaks the name/node invariant or
                the checkpoint would move backwards
            StoreUnavailable: If the transaction fails
        """
        with self._errors("commit batch"), self._session_factory.begin() as session:
            written = 0
            for record in records:
                self._upsert_domain(session, record)
                written += 1
            held = 0
            for record in pending:
                self._upsert_pending(session, record)
                held += 1
            audited = self._write_events(session, events)
            self._write_checkpoint(session, chain, network_id, checkpoint)

        logger.debug(
            f"Committed {written} domains, {held} pending nodes, {audited} events, "
            f"checkpoint {checkpoint} for {chain}/{network_id}"
        )

    def _upsert_domain(self, session: Session, record: DomainRecord) -> None:
        if record.name is None:
            raise ConstraintViolation(f"Cannot persist unnamed node {record.node}")
        if namehash_for(record.name, record.blockchain) != record.node:
            raise ConstraintViolation(
                f"Node {record.node} does not match namehash of {record.name}"
            )

        row = session.scalar(select(DomainRow).where(DomainRow.name == record.name))
        if row is None:
            row = DomainRow(name=record.name)
            session.add(row)

        row.node = record.node
        row.blockchain = record.blockchain.value
        row.network_id = record.network_id
        row.owner_address = record.owner_address
        row.resolver = record.resolver
        row.registry_address = record.registry
        row.resolution = dict(record.resolution)

        session.execute(delete(PendingNodeRow).where(PendingNodeRow.node == record.node))

    def _upsert_pending(self, session: Session, record: DomainRecord) -> None:
        if record.name is not None:
            raise ConstraintViolation(f"Pending node {record.node} already names {record.name}")

        row = session.scalar(select(PendingNodeRow).where(PendingNodeRow.node == record.node))
        if row is None:
            row = PendingNodeRow(node=record.node)
            session.add(row)

        row.blockchain = record.blockchain.value
        row.network_id = record.network_id
        row.owner_address = record.owner_address
        row.resolver = record.resolver
        row.registry_address = record.registry
        row.resolution = dict(record.resolution)

    @staticmethod
    def _write_events(session: Session, events: Iterable[ChainEvent]) -> int:
        written = 0
        for event in events:
            exists = session.scalar(
                select(ChainEventRow.id).where(
                    ChainEventRow.blockchain == event.blockchain.value,
                    ChainEventRow.network_id == event.network_id,
                    ChainEventRow.transaction_hash == event.transaction_hash,
                    ChainEventRow.sequence == event.sequence,
                    ChainEventRow.event_index == event.event_index,
                )
            )
            if exists is not None:
                continue
            session.add(
                ChainEventRow(
                    blockchain=event.blockchain.value,
                    network_id=event.network_id,
                    transaction_hash=event.transaction_hash,
                    sequence=event.sequence,
                    event_index=event.event_index,
                    block_number=event.block_number,
                    kind=event.kind.value,
                    node=event.node,
                    registry_address=event.registry,
                    payload=dict(event.payload),
                )
            )
            written += 1
        return written

    def _write_checkpoint(
        self,
        session: Session,
        chain: str,
        network_id: int,
        checkpoint: Checkpoint,
    ) -> None:
        row = self._checkpoint_row(session, chain, network_id)
        if row is None:
            session.add(
                CheckpointRow(
                    chain=chain,
                    network_id=network_id,
                    block_number=checkpoint.block_number,
                    sequence=checkpoint.sequence,
                )
            )
            return

        current = Checkpoint(row.block_number, row.sequence)
        if checkpoint < current:
            raise ConstraintViolation(
                f"Checkpoint for {chain}/{network_id} cannot move back "
                f"from {current} to {checkpoint}"
            )
        row.block_number = checkpoint.block_number
        row.sequence = checkpoint.sequence

    @staticmethod
    def _checkpoint_row(session: Session, chain: str, network_id: int) -> CheckpointRow | None:
        return session.scalar(
            select(CheckpointRow).where(
                CheckpointRow.chain == chain,
                CheckpointRow.network_id == network_id,
            )
        )
