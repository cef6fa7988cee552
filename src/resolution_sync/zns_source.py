"""
Event source for the ZNS registry on Zilliqa.

Registry transactions are paged out of the ViewBlock API by ``atxuid``, the
per-address transaction counter. Resolver records for ``Configured`` events
are read from the Zilliqa JSON-RPC endpoint.
"""

import logging
from typing import Any

import httpx

from .config import ZnsChainConfig
from .errors import ChainUnavailable, RateLimited, TransientNetworkError
from .models import Checkpoint, SourcePage
from .utils.namehash import is_burn_address


class ZnsEventSource:
    """
    Pages ZNS registry transactions out of ViewBlock.
    """

    chain = "ZIL"

    def __init__(self, config: ZnsChainConfig, client: httpx.AsyncClient | None = None):
        """
        Initialize the event source.

        Args:
            config: Zilliqa chain configuration
            client: HTTP client, one is created from the config when omitted
        """
        self.config = config
        self.page_size = config.polling.page_size
        self.client = client or httpx.AsyncClient(timeout=config.request_timeout)
        self._owns_client = client is None

        # Metrics tracking
        self.pages_fetched = 0
        self.transactions_fetched = 0
        self.records_lookups = 0

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def network_id(self) -> int:
        return self.config.network_id

    def initial_checkpoint(self) -> Checkpoint:
        """Checkpoint used before anything was committed for this chain."""
        return Checkpoint(0, -1)

    async def _request(self, method: str, url: str, action: str, **kwargs: Any) -> Any:
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                retry_after = e.response.headers.get("Retry-After")
                raise RateLimited(
                    f"Rate limited while {action}",
                    retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                ) from e
            raise ChainUnavailable(
                f"Failed {action}: HTTP {e.response.status_code}"
            ) from e
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientNetworkError(f"Network error while {action}: {e}") from e
        except ValueError as e:
            raise ChainUnavailable(f"Invalid JSON while {action}: {e}") from e

    async def fetch_since(self, checkpoint: Checkpoint, cursor: int | None = None) -> SourcePage:
        """
        Fetch one page of registry transactions after ``checkpoint``.

        Args:
            checkpoint: Last committed position for this chain
            cursor: First atxuid of the page, from a previous page's next_cursor

        Returns:
            SourcePage with transactions in ascending atxuid order

        Raises:
            TransientNetworkError, RateLimited, ChainUnavailable
        """
        start = cursor if cursor is not None else checkpoint.sequence + 1
        end = start + self.page_size - 1

        payload = await self._request(
            "GET",
            f"{self.config.viewblock_url.rstrip('/')}/addresses/{self.config.registry}/txs",
            f"fetching transactions {start}-{end}",
            params={
                "network": self.config.network,
                "events": "true",
                "atxuidFrom": start,
                "atxuidTo": end,
            },
            headers={"X-APIKEY": self.config.viewblock_api_key},
        )
        if not isinstance(payload, list):
            raise ChainUnavailable(f"Unexpected ViewBlock response: {type(payload).__name__}")

        try:
            txs = sorted(
                (tx for tx in payload if start <= int(tx["atxuid"]) <= end),
                key=lambda tx: int(tx["atxuid"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChainUnavailable(f"ViewBlock transaction without atxuid: {e}") from e

        for tx in txs:
            await self._attach_records(tx)

        self.pages_fetched += 1
        self.transactions_fetched += len(txs)
        if txs:
            self.logger.info(f"Fetched {len(txs)} transactions, atxuid {start}-{end}")

        high_water = None
        if txs:
            last = txs[-1]
            high_water = Checkpoint(int(last["blockHeight"]), int(last["atxuid"]))

        return SourcePage(
            records=txs,
            next_cursor=end + 1 if len(payload) >= self.page_size else None,
            high_water=high_water,
        )

    async def _attach_records(self, tx: dict[str, Any]) -> None:
        if tx.get("receiptSuccess") is False:
            return
        for event in tx.get("events") or []:
            if event.get("name") != "Configured":
                continue
            params = event.get("params") or {}
            resolver = params.get("resolver")
            if not resolver:
                continue
            if is_burn_address(resolver):
                event["records"] = {}
            else:
                event["records"] = await self.get_resolver_records(resolver)

    async def get_resolver_records(self, resolver: str) -> dict[str, str]:
        """
        Read the ``records`` field of a resolver contract.

        Args:
            resolver: Resolver contract address (base16, with or without 0x)

        Returns:
            The resolver's key/value records, empty if the contract has none
        """
        address = resolver[2:] if resolver.lower().startswith("0x") else resolver
        body = await self._request(
            "POST",
            self.config.rpc_url,
            f"reading records of resolver {resolver}",
            json={
                "id": "1",
                "jsonrpc": "2.0",
                "method": "GetSmartContractSubState",
                "params": [address.lower(), "records", []],
            },
        )
        self.records_lookups += 1

        if not isinstance(body, dict):
            raise ChainUnavailable(f"Unexpected Zilliqa RPC response for {resolver}")
        if body.get("error"):
            raise ChainUnavailable(f"Zilliqa RPC error for {resolver}: {body['error']}")

        result = body.get("result") or {}
        records = result.get("records") or {}
        return {str(key): str(value) for key, value in records.items()}

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def get_metrics(self) -> dict[str, int]:
        return {
            "pages_fetched": self.pages_fetched,
            "transactions_fetched": self.transactions_fetched,
            "records_lookups": self.records_lookups,
        }
