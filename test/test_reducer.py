"""Unit tests for the StateReducer."""

import random

import pytest

from resolution_sync.models import Blockchain, ChainEvent, ChainEventKind, Checkpoint, DomainRecord
from resolution_sync.reducer import StateReducer
from resolution_sync.utils.namehash import eip137_namehash, zns_namehash

CNS_REGISTRY = "0xd1e5b0ff1287aa9f9a268759062e4ab08b9dacbe"
UNS_REGISTRY = "0x049aba7510f45ba5b64ea9e658e342f904db358d"
ZNS_REGISTRY = "0x9611c53be6d1b32058b2747bdececed7e1216793"
ZERO = "0x" + "0" * 40

ALPHA = eip137_namehash("alpha.crypto")
BETA = eip137_namehash("beta.crypto")
START = Checkpoint(0, -1)


def event(
    kind: ChainEventKind,
    node: str,
    block: int,
    seq: int,
    payload: dict | None = None,
    blockchain: Blockchain = Blockchain.CNS,
    registry: str = CNS_REGISTRY,
    index: int = 0,
) -> ChainEvent:
    return ChainEvent(
        kind=kind,
        blockchain=blockchain,
        network_id=1,
        registry=registry,
        block_number=block,
        sequence=seq,
        transaction_hash=f"0x{block:032x}{seq:032x}",
        node=node,
        payload=payload or {},
        event_index=index,
    )


def named(name: str, node: str, **fields) -> DomainRecord:
    values = {"blockchain": Blockchain.CNS, "network_id": 1, "registry": CNS_REGISTRY}
    values.update(fields)
    return DomainRecord(name=name, node=node, **values)


@pytest.fixture
def reducer():
    return StateReducer()


@pytest.fixture
def alpha_events():
    return [
        event(ChainEventKind.TRANSFER, ALPHA, 100, 0, {"owner": "0xa"}),
        event(ChainEventKind.RESOLVER_CHANGED, ALPHA, 100, 1, {"resolver": "0xr"}),
        event(ChainEventKind.SET_RECORD, ALPHA, 101, 0, {"key": "crypto.ETH.address", "value": "0xE"}),
    ]


class TestReducerRules:
    """One rule at a time against a known row."""

    def test_alpha_scenario(self, reducer, alpha_events):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA)}
        result = reducer.apply(snapshot, alpha_events, START)

        row = result.projection[ALPHA]
        assert row.owner_address == "0xa"
        assert row.resolver == "0xr"
        assert row.resolution == {"crypto.ETH.address": "0xE"}
        assert result.checkpoint == Checkpoint(101, 0)
        assert result.applied_count == 3
        assert [r.name for r in result.rows] == ["alpha.crypto"]

    def test_snapshot_is_not_mutated(self, reducer, alpha_events):
        original = named("alpha.crypto", ALPHA)
        reducer.apply({ALPHA: original}, alpha_events, START)
        assert original.owner_address is None
        assert original.resolution == {}

    def test_beta_burn(self, reducer):
        snapshot = {BETA: named("beta.crypto", BETA, owner_address="0xb", resolver="0xr",
                                resolution={"k": "v"})}
        result = reducer.apply(
            snapshot, [event(ChainEventKind.TRANSFER, BETA, 200, 0, {"owner": ZERO})], START
        )
        row = result.projection[BETA]
        assert row.owner_address is None
        assert row.resolver is None
        assert row.resolution == {"k": "v"}

    def test_resolver_change_keeps_records(self, reducer):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA, resolution={"k": "v"})}
        result = reducer.apply(
            snapshot,
            [event(ChainEventKind.RESOLVER_CHANGED, ALPHA, 1, 0, {"resolver": "0xNEW"})],
            START,
        )
        assert result.projection[ALPHA].resolver == "0xnew"
        assert result.projection[ALPHA].resolution == {"k": "v"}

    def test_set_records_merges(self, reducer):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA, resolution={"a": "1", "b": "2"})}
        result = reducer.apply(
            snapshot,
            [event(ChainEventKind.SET_RECORDS, ALPHA, 1, 0, {"records": {"b": "3", "c": "4"}})],
            START,
        )
        assert result.projection[ALPHA].resolution == {"a": "1", "b": "3", "c": "4"}

    def test_reset_records(self, reducer):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA, resolution={"a": "1"})}
        result = reducer.apply(snapshot, [event(ChainEventKind.RESET_RECORDS, ALPHA, 1, 0)], START)
        assert result.projection[ALPHA].resolution == {}

    def test_records_are_stored_verbatim(self, reducer):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA)}
        result = reducer.apply(
            snapshot,
            [event(ChainEventKind.SET_RECORD, ALPHA, 1, 0, {"key": "ETH", "value": "0xAbC"})],
            START,
        )
        assert result.projection[ALPHA].resolution == {"ETH": "0xAbC"}

    def test_registry_changed_only_touches_governance(self, reducer):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA, owner_address="0xa", resolution={"k": "v"})}
        change = event(
            ChainEventKind.REGISTRY_CHANGED, ALPHA, 5, 0,
            {"registry": UNS_REGISTRY, "blockchain": Blockchain.UNS, "network_id": 1},
        )
        row = reducer.apply(snapshot, [change], START).projection[ALPHA]
        assert row.registry == UNS_REGISTRY
        assert row.blockchain is Blockchain.UNS
        assert row.owner_address == "0xa"
        assert row.resolution == {"k": "v"}


class TestReducerOrdering:
    """Checkpoint filtering, ordering and idempotence."""

    def test_replay_at_checkpoint_is_noop(self, reducer, alpha_events):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA)}
        first = reducer.apply(snapshot, alpha_events, START)

        replay = reducer.apply(first.projection, alpha_events, Checkpoint(101, 0))
        assert replay.applied_count == 0
        assert replay.projection == first.projection
        assert replay.checkpoint == Checkpoint(101, 0)
        assert replay.rows == []

    def test_input_order_does_not_matter(self, reducer, alpha_events):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA)}
        expected = reducer.apply(snapshot, alpha_events, START).projection

        shuffled = list(alpha_events)
        random.Random(7).shuffle(shuffled)
        assert reducer.apply(snapshot, shuffled, START).projection == expected

    def test_later_event_wins(self, reducer):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA)}
        events = [
            event(ChainEventKind.SET_RECORD, ALPHA, 10, 1, {"key": "k", "value": "late"}),
            event(ChainEventKind.SET_RECORD, ALPHA, 10, 0, {"key": "k", "value": "early"}),
        ]
        result = reducer.apply(snapshot, events, START)
        assert result.projection[ALPHA].resolution == {"k": "late"}

    def test_duplicates_in_batch_apply_once(self, reducer, alpha_events):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA)}
        result = reducer.apply(snapshot, alpha_events + alpha_events, START)
        assert result.applied_count == 3
        assert len(result.skipped) == 3

    def test_partial_replay(self, reducer, alpha_events):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA)}
        result = reducer.apply(snapshot, alpha_events, Checkpoint(100, 0))
        assert result.applied_count == 2
        assert result.projection[ALPHA].owner_address is None
        assert result.projection[ALPHA].resolver == "0xr"


class TestReducerNaming:
    """Naming events, placeholders and cross-registry precedence."""

    def test_mint_with_transfer_before_new_uri(self, reducer):
        events = [
            event(ChainEventKind.TRANSFER, ALPHA, 50, 0, {"owner": "0xa"}),
            event(ChainEventKind.NEW_URI, ALPHA, 50, 1, {"name": "alpha.crypto"}),
            event(ChainEventKind.RESOLVER_CHANGED, ALPHA, 50, 2, {"resolver": "0xr"}),
        ]
        result = reducer.apply({}, events, START)

        [row] = result.rows
        assert row.name == "alpha.crypto"
        assert row.node == ALPHA
        assert row.owner_address == "0xa"
        assert row.resolver == "0xr"
        assert row.registry == CNS_REGISTRY
        assert result.unnamed == []
        assert result.applied_count == 3
        assert result.pending == []

    def test_unnamed_node_is_held_pending(self, reducer):
        transfer = event(ChainEventKind.TRANSFER, BETA, 1, 0, {"owner": "0xb"})
        result = reducer.apply({}, [transfer], START)
        assert result.rows == []
        assert result.applied_count == 0
        assert result.pending == [transfer]
        assert [r.node for r in result.unnamed] == [BETA]
        assert result.unnamed[0].owner_address == "0xb"

    def test_pending_state_is_adopted_by_naming_event(self, reducer):
        held = DomainRecord(name=None, node=BETA, blockchain=Blockchain.CNS, network_id=1,
                            registry=CNS_REGISTRY, owner_address="0xb",
                            resolution={"crypto.ETH.address": "0xE"})
        naming = event(ChainEventKind.NEW_URI, BETA, 40, 2, {"name": "beta.crypto"})
        result = reducer.apply({BETA: held}, [naming], Checkpoint(30, 0))

        [row] = result.rows
        assert row.name == "beta.crypto"
        assert row.owner_address == "0xb"
        assert row.resolution == {"crypto.ETH.address": "0xE"}
        assert result.applied == [naming]
        assert result.unnamed == []

    def test_zns_new_domain_under_root(self, reducer):
        node = zns_namehash("brad.zil")
        events = [
            event(ChainEventKind.NEW_DOMAIN, node, 9, 3,
                  {"parent": zns_namehash("zil"), "label": "brad"},
                  blockchain=Blockchain.ZNS, registry=ZNS_REGISTRY),
            event(ChainEventKind.CONFIGURED, node, 9, 3,
                  {"owner": "0xo", "resolver": "0xr", "records": {"crypto.ZIL.address": "zil1"}},
                  blockchain=Blockchain.ZNS, registry=ZNS_REGISTRY, index=1),
        ]
        [row] = reducer.apply({}, events, START).rows
        assert row.name == "brad.zil"
        assert row.blockchain is Blockchain.ZNS
        assert row.owner_address == "0xo"
        assert row.resolution == {"crypto.ZIL.address": "zil1"}

    def test_zns_new_domain_with_unknown_parent(self, reducer):
        orphan = event(
            ChainEventKind.NEW_DOMAIN, zns_namehash("a.b.zil"), 9, 3,
            {"parent": zns_namehash("b.zil"), "label": "a"},
            blockchain=Blockchain.ZNS, registry=ZNS_REGISTRY,
        )
        result = reducer.apply({}, [orphan], START)
        assert result.applied_count == 0
        assert result.checkpoint == Checkpoint(9, 3)

    def test_non_governing_registry_is_skipped(self, reducer):
        snapshot = {ALPHA: named("alpha.crypto", ALPHA, registry=UNS_REGISTRY,
                                 blockchain=Blockchain.UNS, owner_address="0xa")}
        stale = event(ChainEventKind.TRANSFER, ALPHA, 300, 0, {"owner": "0xb"})
        result = reducer.apply(snapshot, [stale], START)
        assert result.projection[ALPHA].owner_address == "0xa"
        assert result.skipped == [stale]

    def test_zns_domain_migrates_to_uns(self, reducer):
        zns_node = zns_namehash("brad.zil")
        uns_node = eip137_namehash("brad.zil")
        snapshot = {zns_node: named("brad.zil", zns_node, blockchain=Blockchain.ZNS,
                                    registry=ZNS_REGISTRY, owner_address="0xold",
                                    resolution={"k": "v"})}
        events = [
            event(ChainEventKind.TRANSFER, uns_node, 700, 0, {"owner": "0xnew"},
                  blockchain=Blockchain.UNS, registry=UNS_REGISTRY),
            event(ChainEventKind.NEW_URI, uns_node, 700, 1, {"name": "brad.zil"},
                  blockchain=Blockchain.UNS, registry=UNS_REGISTRY),
        ]
        result = reducer.apply(snapshot, events, START)

        [row] = result.rows
        assert row.node == uns_node
        assert row.blockchain is Blockchain.UNS
        assert row.registry == UNS_REGISTRY
        assert row.owner_address == "0xnew"
        assert row.resolution == {"k": "v"}
        assert zns_node not in result.projection

    def test_lower_ranked_naming_is_skipped(self, reducer):
        uns_node = eip137_namehash("brad.zil")
        snapshot = {uns_node: named("brad.zil", uns_node, blockchain=Blockchain.UNS,
                                    registry=UNS_REGISTRY)}
        late = event(
            ChainEventKind.NEW_DOMAIN, zns_namehash("brad.zil"), 10, 0,
            {"parent": zns_namehash("zil"), "label": "brad"},
            blockchain=Blockchain.ZNS, registry=ZNS_REGISTRY,
        )
        result = reducer.apply(snapshot, [late], START)
        assert result.skipped == [late]
        assert result.projection[uns_node].blockchain is Blockchain.UNS
