"""
Event source for the CNS and UNS registries on an EVM chain.

"""

import logging
from typing import Any

from aiohttp import ClientTimeout
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from .config import CnsChainConfig
from .errors import ChainUnavailable, RateLimited, SourceError, TransientNetworkError
from .models import Checkpoint, SourcePage
from .utils.contract_utility import to_hex, topic_for

SYNC_TOPIC = topic_for("Sync(address,uint256,uint256)")
SET_TOPIC = topic_for("Set(uint256,string,string,string,string)")
RESET_UPDATE = "0x" + "00" * 32


def _topic(log: Any, index: int) -> str | None:
    topics = log.get("topics") or []
    return to_hex(topics[index]) if len(topics) > index else None


def _is_record_sync(log: Any) -> bool:
    """Sync announcing a single record write rather than a reset."""
    return _topic(log, 0) == SYNC_TOPIC and _topic(log, 2) != RESET_UPDATE


def translate_rpc_error(e: Exception, action: str) -> SourceError:
    """Map a provider exception onto the source error taxonomy."""
    message = str(e)
    lowered = message.lower()
    if getattr(e, "status", None) == 429 or "rate limit" in lowered or "too many requests" in lowered:
        return RateLimited(f"Rate limited while {action}: {message}")
    if isinstance(e, (TimeoutError, ConnectionError, OSError)):
        return TransientNetworkError(f"Network error while {action}: {message}")
    return ChainUnavailable(f"Failed {action}: {message}")


class CnsEventSource:
    """
    Pages registry logs out of an EVM node with eth_getLogs.

    Pages are whole block ranges of at most ``page_size`` blocks and stop
    ``confirmations`` blocks behind the head.
    """

    chain = "ETH"

    def __init__(self, config: CnsChainConfig, w3: Any = None):
        """
        Initialize the event source.

        Args:
            config: EVM chain configuration
            w3: AsyncWeb3 instance, built from ``config.rpc_url`` when omitted
        """
        self.config = config
        self.addresses = list(config.registries)
        self.page_size = config.polling.page_size

        self.w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(
                config.rpc_url,
                request_kwargs={"timeout": ClientTimeout(total=config.request_timeout)},
            )
        )

        # Metrics tracking
        self.pages_fetched = 0
        self.logs_fetched = 0
        self.resolver_lookups = 0

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def network_id(self) -> int:
        return self.config.network_id

    def initial_checkpoint(self) -> Checkpoint:
        """Checkpoint used before anything was committed for this chain."""
        return Checkpoint.end_of_block(self.config.start_block - 1)

    async def safe_head(self) -> int:
        """Latest block considered final enough to scan."""
        try:
            latest = await self.w3.eth.block_number
        except Exception as e:
            raise translate_rpc_error(e, "reading block number") from e
        return latest - self.config.confirmations

    async def fetch_since(self, checkpoint: Checkpoint, cursor: int | None = None) -> SourcePage:
        """
        Fetch one page of registry logs after ``checkpoint``.

        Args:
            checkpoint: Last committed position for this chain
            cursor: First block of the page, from a previous page's next_cursor

        Returns:
            SourcePage with logs in (blockNumber, logIndex) order

        Raises:
            TransientNetworkError, RateLimited, ChainUnavailable
        """
        if cursor is not None:
            from_block = cursor
        elif checkpoint.covers_block:
            from_block = checkpoint.block_number + 1
        else:
            from_block = checkpoint.block_number

        head = await self.safe_head()
        if from_block > head:
            self.logger.debug(f"No new blocks: next {from_block}, safe head {head}")
            return SourcePage(records=[])

        to_block = min(from_block + self.page_size - 1, head)
        try:
            logs = await self.w3.eth.get_logs({
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": self.addresses,
            })
        except Exception as e:
            raise translate_rpc_error(e, f"fetching logs {from_block}-{to_block}") from e

        logs = await self._attach_resolver_logs(logs, from_block, to_block)
        records = sorted(logs, key=lambda log: (int(log["blockNumber"]), int(log["logIndex"])))
        self.pages_fetched += 1
        self.logs_fetched += len(records)

        if records:
            self.logger.info(f"Fetched {len(records)} logs in blocks {from_block}-{to_block}")

        return SourcePage(
            records=records,
            next_cursor=to_block + 1 if to_block < head else None,
            high_water=Checkpoint.end_of_block(to_block),
        )

    async def _attach_resolver_logs(self, logs: list[Any], from_block: int, to_block: int) -> list[Any]:
        """
        Pair each legacy CNS Sync log with the resolver Set log it announces.

        CNS resolvers write records themselves and only report the change to
        the registry as ``Sync(resolver, updateId, tokenId)``, where updateId
        is the keccak of the key. The matching resolver log is the Set in the
        same transaction with the same token and key hash. Resets carry
        updateId 0 and need no lookup.
        """
        syncs = [log for log in logs if _is_record_sync(log)]
        if not syncs:
            return logs

        resolvers = sorted({Web3.to_checksum_address("0x" + _topic(log, 1)[-40:]) for log in syncs})
        try:
            resolver_logs = await self.w3.eth.get_logs({
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": resolvers,
                "topics": [SET_TOPIC],
            })
        except Exception as e:
            raise translate_rpc_error(e, f"fetching resolver logs {from_block}-{to_block}") from e
        self.resolver_lookups += 1

        # (transaction, resolver, tokenId, key hash) -> Set log
        writes = {
            (to_hex(log["transactionHash"]), to_hex(log["address"]), _topic(log, 1), _topic(log, 2)): log
            for log in resolver_logs
        }

        attached = []
        for log in logs:
            if _is_record_sync(log):
                key = (
                    to_hex(log["transactionHash"]),
                    "0x" + _topic(log, 1)[-40:],
                    _topic(log, 3),
                    _topic(log, 2),
                )
                if (write := writes.get(key)) is not None:
                    log = {**log, "resolverLog": write}
                else:
                    self.logger.warning(
                        f"No resolver Set log for Sync at {log['blockNumber']}/{log['logIndex']}"
                    )
            attached.append(log)
        return attached

    async def close(self) -> None:
        provider = getattr(self.w3, "provider", None)
        if provider is not None and hasattr(provider, "disconnect"):
            await provider.disconnect()

    def get_metrics(self) -> dict[str, int]:
        return {
            "pages_fetched": self.pages_fetched,
            "logs_fetched": self.logs_fetched,
            "resolver_lookups": self.resolver_lookups,
        }
