#!/usr/bin/env python3
"""Event decoding for the resolution sync service.

This module turns raw chain records into typed ChainEvent values: EVM logs
from the CNS and UNS registries, and Zilliqa transactions from the ZNS
registry. Decoders are pure; they never touch the network or the store.
"""

import logging
from collections.abc import Mapping
from typing import Any

from web3 import Web3

from .errors import MalformedPayload, UnknownEventType
from .models import Blockchain, ChainEvent, ChainEventKind
from .utils.contract_utility import ContractUtility, event_topics, to_hex
from .utils.namehash import child_node, eip137_namehash, normalize_name, token_id_to_node

# Get logger for this module
logger = logging.getLogger(__name__)

# Recognized registry events that carry nothing the projection stores.
CNS_PASSIVE_EVENTS = frozenset({"Approval", "ApprovalForAll", "NewKey"})
ZNS_PASSIVE_EVENTS = frozenset({"ApprovalFor", "AdminSet", "OperatorSet", "Transferred"})


class CnsEventDecoder:
    """Decodes CNS and UNS registry logs.

    The topic of each log selects the registry event; the event ABI then
    decodes the indexed topics and the data payload.
    """

    def __init__(
        self,
        registries: Mapping[str, Blockchain],
        network_id: int,
        contract_util: ContractUtility | None = None,
    ) -> None:
        """Initialize the decoder.

        Args:
            registries: Registry address -> registry family
            network_id: Numeric network identifier stamped on every event
            contract_util: ABI loader, a default one is created when omitted
        """
        self.registries = {address.lower(): chain for address, chain in registries.items()}
        self.network_id = network_id

        contract_util = contract_util or ContractUtility()
        self._contract = contract_util.get_contract("Registry")
        self._topics = event_topics(contract_util.get_contract_abi("Registry"))

        # Metrics tracking
        self.events_decoded = 0
        self.events_passive = 0

    def decode(self, log: Mapping[str, Any]) -> list[ChainEvent]:
        """Decode one registry log.

        Args:
            log: Raw log as returned by eth_getLogs

        Returns:
            The decoded events; empty for recognized events without effect

        Raises:
            UnknownEventType: If the log topic matches no registry event
            MalformedPayload: If a registry event cannot be decoded
        """
        try:
            block_number = int(log["blockNumber"])
            log_index = int(log["logIndex"])
            topics = list(log.get("topics") or [])
            address = to_hex(log["address"])
            tx_hash = to_hex(log["transactionHash"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedPayload(f"Log is missing required fields: {e}") from e

        if not topics:
            raise MalformedPayload(
                f"Log without topics at {block_number}/{log_index}",
                block_number=block_number,
                sequence=log_index,
            )

        blockchain = self.registries.get(address)
        if blockchain is None:
            raise MalformedPayload(
                f"Log from unexpected contract {address}",
                block_number=block_number,
                sequence=log_index,
            )

        event_name = self._topics.get(to_hex(topics[0]))
        if event_name is None:
            raise UnknownEventType(to_hex(topics[0]), block_number, log_index)

        if event_name in CNS_PASSIVE_EVENTS:
            self.events_passive += 1
            logger.debug(f"Ignoring {event_name} at {block_number}/{log_index}")
            return []

        try:
            event_data = getattr(self._contract.events, event_name).process_log(log)
        except Exception as e:
            raise MalformedPayload(
                f"Failed to decode {event_name} at {block_number}/{log_index}: {e}",
                block_number=block_number,
                sequence=log_index,
            ) from e

        args: Mapping[str, Any] = event_data["args"]
        node = token_id_to_node(int(args["tokenId"]))
        kind, payload = self._build_payload(event_name, args, node, log)

        self.events_decoded += 1
        return [
            ChainEvent(
                kind=kind,
                blockchain=blockchain,
                network_id=self.network_id,
                registry=address,
                block_number=block_number,
                sequence=log_index,
                transaction_hash=tx_hash,
                node=node,
                payload=payload,
            )
        ]

    def _build_payload(
        self,
        event_name: str,
        args: Mapping[str, Any],
        node: str,
        log: Mapping[str, Any],
    ) -> tuple[ChainEventKind, dict[str, Any]]:
        block_number = int(log["blockNumber"])
        log_index = int(log["logIndex"])
        match event_name:
            case "Transfer":
                return ChainEventKind.TRANSFER, {"owner": args["to"].lower()}
            case "Resolve":
                return ChainEventKind.RESOLVER_CHANGED, {"resolver": args["to"].lower()}
            case "Set":
                return ChainEventKind.SET_RECORD, {"key": args["key"], "value": args["value"]}
            case "ResetRecords":
                return ChainEventKind.RESET_RECORDS, {}
            case "Sync":
                return self._resolver_update(args, log, block_number, log_index)
            case "NewURI":
                name = normalize_name(args["uri"])
                if not name or eip137_namehash(name) != node:
                    raise MalformedPayload(
                        f"NewURI {args['uri']!r} does not hash to token {node}",
                        block_number=block_number,
                        sequence=log_index,
                    )
                return ChainEventKind.NEW_URI, {"name": name}
            case _:
                raise UnknownEventType(event_name, block_number, log_index)

    def _resolver_update(
        self,
        args: Mapping[str, Any],
        log: Mapping[str, Any],
        block_number: int,
        log_index: int,
    ) -> tuple[ChainEventKind, dict[str, Any]]:
        """Decode a legacy CNS Sync into the resolver write it announces.

        The registry only reports that ``resolver`` changed a record of the
        token: ``updateId`` is 0 for a reset, otherwise the keccak of the key.
        The key and value come from the resolver's own ``Set`` log, which the
        event source attaches as ``resolverLog``.
        """
        update_id = int(args["updateId"])
        if update_id == 0:
            return ChainEventKind.RESET_RECORDS, {}

        resolver_log = log.get("resolverLog")
        if resolver_log is None:
            raise MalformedPayload(
                f"Sync at {block_number}/{log_index} has no resolver Set log for "
                f"update {update_id:#x}",
                block_number=block_number,
                sequence=log_index,
            )

        try:
            set_args = self._contract.events.Set.process_log(resolver_log)["args"]
        except Exception as e:
            raise MalformedPayload(
                f"Failed to decode resolver Set for Sync at {block_number}/{log_index}: {e}",
                block_number=block_number,
                sequence=log_index,
            ) from e

        key = set_args["key"]
        if int.from_bytes(Web3.keccak(text=key), "big") != update_id:
            raise MalformedPayload(
                f"Resolver Set key {key!r} does not match Sync update {update_id:#x}",
                block_number=block_number,
                sequence=log_index,
            )
        return ChainEventKind.SET_RECORD, {"key": key, "value": set_args["value"]}

    def get_metrics(self) -> dict[str, int]:
        return {
            "events_decoded": self.events_decoded,
            "events_passive": self.events_passive,
        }


class ZnsEventDecoder:
    """Decodes ZNS registry transactions fetched from ViewBlock.

    A transaction may carry several registry events. They share the
    transaction's ordering key and keep their position as ``event_index``.
    """

    def __init__(self, registry: str, network_id: int) -> None:
        """Initialize the decoder.

        Args:
            registry: ZNS registry address
            network_id: Numeric network identifier stamped on every event
        """
        self.registry = registry.lower()
        self.network_id = network_id

        # Metrics tracking
        self.events_decoded = 0
        self.events_unknown = 0
        self.transactions_failed = 0

    def decode(self, tx: Mapping[str, Any]) -> list[ChainEvent]:
        """Decode one ZNS registry transaction.

        Unknown events inside a transaction that also carries known ones are
        logged and dropped; a transaction made only of unknown events raises.

        Raises:
            UnknownEventType: If no event of the transaction is recognized
            MalformedPayload: If a registry event is missing its parameters
        """
        try:
            block_number = int(tx["blockHeight"])
            atxuid = int(tx["atxuid"])
            tx_hash = to_hex(tx["hash"])
            raw_events = list(tx.get("events") or [])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedPayload(f"Transaction is missing required fields: {e}") from e

        if tx.get("receiptSuccess") is False:
            self.transactions_failed += 1
            logger.debug(f"Skipping failed transaction {tx_hash[:10]}...")
            return []

        events: list[ChainEvent] = []
        unknown: list[str] = []
        for event_index, raw in enumerate(raw_events):
            event_name = raw.get("name", "")
            address = raw.get("address")
            if address and to_hex(address) != self.registry:
                continue
            if event_name in ZNS_PASSIVE_EVENTS:
                continue

            params: Mapping[str, Any] = raw.get("params") or {}
            try:
                match event_name:
                    case "NewDomain":
                        parent = to_hex(params["parent"])
                        label = normalize_name(params["label"])
                        if not label or "." in label:
                            raise ValueError(f"invalid label {params['label']!r}")
                        node = child_node(parent, label, Blockchain.ZNS)
                        kind = ChainEventKind.NEW_DOMAIN
                        payload: dict[str, Any] = {"parent": parent, "label": label}
                    case "Configured":
                        node = to_hex(params["node"])
                        records = raw.get("records")
                        if records is not None and not isinstance(records, Mapping):
                            raise ValueError("resolver records must be a mapping")
                        kind = ChainEventKind.CONFIGURED
                        payload = {
                            "owner": to_hex(params["owner"]),
                            "resolver": to_hex(params["resolver"]),
                            "records": dict(records) if records is not None else None,
                        }
                    case _:
                        unknown.append(event_name)
                        continue
            except (KeyError, TypeError, ValueError) as e:
                raise MalformedPayload(
                    f"Failed to decode {event_name} in {tx_hash[:10]}...: {e}",
                    block_number=block_number,
                    sequence=atxuid,
                ) from e

            events.append(
                ChainEvent(
                    kind=kind,
                    blockchain=Blockchain.ZNS,
                    network_id=self.network_id,
                    registry=self.registry,
                    block_number=block_number,
                    sequence=atxuid,
                    transaction_hash=tx_hash,
                    node=node,
                    payload=payload,
                    event_index=event_index,
                )
            )

        if unknown:
            self.events_unknown += len(unknown)
            if not events:
                raise UnknownEventType(",".join(unknown), block_number, atxuid)
            logger.warning(
                f"Dropped unknown events {unknown} in transaction {tx_hash[:10]}..."
            )

        self.events_decoded += len(events)
        return events

    def get_metrics(self) -> dict[str, int]:
        return {
            "events_decoded": self.events_decoded,
            "events_unknown": self.events_unknown,
            "transactions_failed": self.transactions_failed,
        }
