#!/usr/bin/env python3
"""Configuration management for the resolution sync service.

This module provides type-safe configuration dataclasses with validation
for both chain synchronizers. Configuration is loaded from environment
variables with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

from .models import Blockchain

# Get logger for this module
logger = logging.getLogger(__name__)

DEFAULT_CNS_REGISTRY = "0xd1e5b0ff1287aa9f9a268759062e4ab08b9dacbe"
DEFAULT_UNS_REGISTRY = "0x049aba7510f45ba5b64ea9e658e342f904db358d"
DEFAULT_ZNS_REGISTRY = "0x9611c53be6d1b32058b2747bdececed7e1216793"
DEFAULT_CNS_START_BLOCK = 9082251


def _validate_url(url: str, label: str, schemes: tuple[str, ...] = ("http", "https")) -> None:
    if not url:
        raise ValueError(f"{label} is required")
    parsed = urlparse(url)
    if parsed.scheme not in schemes:
        raise ValueError(
            f"Invalid {label} scheme: {parsed.scheme}. "
            f"Expected {' or '.join(schemes)}"
        )


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True, slots=True)
class PollingConfig:
    """Per-chain polling settings.

    Attributes:
        interval: Seconds between cycle starts
        page_size: Blocks (EVM) or transactions (Zilliqa) per fetched page
        cycle_deadline: Seconds a cycle may spend fetching and reducing
        max_pages_per_cycle: Pages fetched before a cycle commits
    """

    interval: int = 30
    page_size: int = 1000
    cycle_deadline: int = 120
    max_pages_per_cycle: int = 10

    def __post_init__(self) -> None:
        """Validate polling configuration."""
        if self.interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.interval}")
        if self.interval > 3600:
            raise ValueError(f"Polling interval too long (max 3600s), got {self.interval}")
        if self.page_size <= 0:
            raise ValueError(f"Page size must be positive, got {self.page_size}")
        if self.cycle_deadline <= 0:
            raise ValueError(f"Cycle deadline must be positive, got {self.cycle_deadline}")
        if self.max_pages_per_cycle <= 0:
            raise ValueError(
                f"Max pages per cycle must be positive, got {self.max_pages_per_cycle}"
            )

    @classmethod
    def from_env(cls, prefix: str, **defaults: int) -> "PollingConfig":
        """Load ``{prefix}_POLLING_INTERVAL``, ``{prefix}_PAGE_SIZE`` etc."""
        base = cls(**defaults)
        return cls(
            interval=_env_int(f"{prefix}_POLLING_INTERVAL", base.interval),
            page_size=_env_int(f"{prefix}_PAGE_SIZE", base.page_size),
            cycle_deadline=_env_int(f"{prefix}_CYCLE_DEADLINE", base.cycle_deadline),
            max_pages_per_cycle=_env_int(f"{prefix}_MAX_PAGES", base.max_pages_per_cycle),
        )


@dataclass(frozen=True, slots=True)
class CnsChainConfig:
    """Configuration for the EVM chain hosting the CNS and UNS registries.

    Attributes:
        rpc_url: HTTP(S) JSON-RPC endpoint
        registries: Checksummed registry address -> registry family
        network_id: Numeric network identifier (1 for Ethereum mainnet)
        start_block: First block scanned when no checkpoint exists
        confirmations: Blocks kept between the head and the scanned range
        request_timeout: HTTP request timeout in seconds
    """

    rpc_url: str
    registries: dict[str, Blockchain]
    network_id: int = 1
    start_block: int = DEFAULT_CNS_START_BLOCK
    confirmations: int = 3
    request_timeout: int = 30
    polling: PollingConfig = field(
        default_factory=lambda: PollingConfig(interval=15, page_size=500)
    )

    def __post_init__(self) -> None:
        """Validate EVM chain configuration."""
        _validate_url(self.rpc_url, "CNS RPC URL (CNS_RPC_URL)")

        if not self.registries:
            raise ValueError("At least one CNS or UNS registry address is required")

        checksummed: dict[str, Blockchain] = {}
        for address, blockchain in self.registries.items():
            if not Web3.is_address(address):
                raise ValueError(f"Invalid registry address: {address}")
            if blockchain not in (Blockchain.CNS, Blockchain.UNS):
                raise ValueError(f"EVM registry cannot be {blockchain.value}: {address}")
            checksummed[Web3.to_checksum_address(address)] = blockchain
        # Use object.__setattr__ since dataclass is frozen
        object.__setattr__(self, "registries", checksummed)

        if self.start_block < 0:
            raise ValueError(f"Start block must be non-negative, got {self.start_block}")
        if self.confirmations < 0:
            raise ValueError(f"Confirmations must be non-negative, got {self.confirmations}")
        if self.request_timeout <= 0 or self.request_timeout > 120:
            raise ValueError(
                f"Request timeout must be within 1-120s, got {self.request_timeout}"
            )


@dataclass(frozen=True, slots=True)
class ZnsChainConfig:
    """Configuration for the Zilliqa chain hosting the ZNS registry.

    Attributes:
        viewblock_url: ViewBlock Zilliqa API base URL
        viewblock_api_key: API key sent as X-APIKEY
        rpc_url: Zilliqa JSON-RPC endpoint used to read resolver records
        registry: ZNS registry address (lower-cased base16)
        network: ViewBlock network name
        network_id: Numeric network identifier
        request_timeout: HTTP request timeout in seconds
    """

    viewblock_url: str
    viewblock_api_key: str
    rpc_url: str
    registry: str = DEFAULT_ZNS_REGISTRY
    network: str = "mainnet"
    network_id: int = 1
    request_timeout: int = 30
    polling: PollingConfig = field(
        default_factory=lambda: PollingConfig(interval=30, page_size=100)
    )

    SUPPORTED_NETWORKS: ClassVar[set[str]] = {"mainnet", "testnet"}

    def __post_init__(self) -> None:
        """Validate Zilliqa chain configuration."""
        _validate_url(self.viewblock_url, "ViewBlock URL (VIEWBLOCK_API_URL)")
        _validate_url(self.rpc_url, "Zilliqa RPC URL (ZILLIQA_RPC_URL)")

        if not self.viewblock_api_key:
            raise ValueError("ViewBlock API key is required (VIEWBLOCK_API_KEY)")

        if self.network not in self.SUPPORTED_NETWORKS:
            raise ValueError(
                f"Unsupported network: {self.network}. "
                f"Supported networks: {', '.join(sorted(self.SUPPORTED_NETWORKS))}"
            )

        # Zilliqa base16 addresses are not EIP-55 checksummed
        registry = self.registry.lower()
        if not Web3.is_address(registry):
            raise ValueError(f"Invalid ZNS registry address: {self.registry}")
        object.__setattr__(self, "registry", registry)

        if self.request_timeout <= 0 or self.request_timeout > 120:
            raise ValueError(
                f"Request timeout must be within 1-120s, got {self.request_timeout}"
            )


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Main configuration for the resolution sync service.

    Attributes:
        database_url: SQLAlchemy URL of the projection database
        cns: EVM chain settings, None when CNS/UNS sync is disabled
        zns: Zilliqa chain settings, None when ZNS sync is disabled
    """

    database_url: str
    cns: CnsChainConfig | None = None
    zns: ZnsChainConfig | None = None

    def __post_init__(self) -> None:
        """Validate service configuration."""
        if not self.database_url:
            raise ValueError("Database URL is required (DATABASE_URL)")
        if self.cns is None and self.zns is None:
            raise ValueError("At least one of the CNS or ZNS synchronizers must be enabled")

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Load configuration from environment variables.

        Returns:
            SyncConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        database_url = os.environ.get("DATABASE_URL", "sqlite:///resolution.db")

        cns_config: CnsChainConfig | None = None
        if not _env_flag("DISABLE_CNS"):
            rpc_url = os.environ.get("CNS_RPC_URL", "")
            if not rpc_url:
                raise ValueError(
                    "CNS_RPC_URL environment variable is required. "
                    "Example: https://ethereum.publicnode.com"
                )

            registries: dict[str, Blockchain] = {}
            if cns_registry := os.environ.get("CNS_REGISTRY_ADDRESS", DEFAULT_CNS_REGISTRY):
                registries[cns_registry] = Blockchain.CNS
            if uns_registry := os.environ.get("UNS_REGISTRY_ADDRESS", DEFAULT_UNS_REGISTRY):
                registries[uns_registry] = Blockchain.UNS

            cns_config = CnsChainConfig(
                rpc_url=rpc_url,
                registries=registries,
                network_id=_env_int("ETH_NETWORK_ID", 1),
                start_block=_env_int("CNS_START_BLOCK", DEFAULT_CNS_START_BLOCK),
                confirmations=_env_int("CNS_CONFIRMATION_BLOCKS", 3),
                request_timeout=_env_int("REQUEST_TIMEOUT", 30),
                polling=PollingConfig.from_env("CNS", interval=15, page_size=500),
            )

        zns_config: ZnsChainConfig | None = None
        if not _env_flag("DISABLE_ZNS"):
            api_key = os.environ.get("VIEWBLOCK_API_KEY", "")
            if not api_key:
                raise ValueError(
                    "VIEWBLOCK_API_KEY environment variable is required. "
                    "Set DISABLE_ZNS=true to run without the Zilliqa synchronizer."
                )

            zns_config = ZnsChainConfig(
                viewblock_url=os.environ.get(
                    "VIEWBLOCK_API_URL", "https://api.viewblock.io/v1/zilliqa"
                ),
                viewblock_api_key=api_key,
                rpc_url=os.environ.get("ZILLIQA_RPC_URL", "https://api.zilliqa.com"),
                registry=os.environ.get("ZNS_REGISTRY_ADDRESS", DEFAULT_ZNS_REGISTRY),
                network=os.environ.get("ZIL_NETWORK", "mainnet"),
                network_id=_env_int("ZIL_NETWORK_ID", 1),
                request_timeout=_env_int("REQUEST_TIMEOUT", 30),
                polling=PollingConfig.from_env("ZNS", interval=30, page_size=100),
            )

        return cls(database_url=database_url, cns=cns_config, zns=zns_config)

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Resolution Sync Configuration")
        logger.info("=" * 60)

        logger.info(f"Database: {_mask_url(self.database_url)}")

        if self.cns:
            logger.info("CNS/UNS Chain:")
            logger.info(f"  RPC URL: {self.cns.rpc_url}")
            for address, blockchain in self.cns.registries.items():
                logger.info(f"  {blockchain.value} Registry: {address}")
            logger.info(f"  Network ID: {self.cns.network_id}")
            logger.info(f"  Start Block: {self.cns.start_block}")
            logger.info(f"  Confirmations: {self.cns.confirmations}")
            _log_polling(self.cns.polling)
        else:
            logger.info("CNS/UNS Chain: [DISABLED]")

        if self.zns:
            logger.info("ZNS Chain:")
            logger.info(f"  ViewBlock URL: {self.zns.viewblock_url}")
            logger.info("  ViewBlock API Key: [CONFIGURED]")
            logger.info(f"  RPC URL: {self.zns.rpc_url}")
            logger.info(f"  Registry: {self.zns.registry}")
            logger.info(f"  Network: {self.zns.network} ({self.zns.network_id})")
            _log_polling(self.zns.polling)
        else:
            logger.info("ZNS Chain: [DISABLED]")

        logger.info("=" * 60)


def _log_polling(polling: PollingConfig) -> None:
    logger.info(f"  Polling Interval: {polling.interval} seconds")
    logger.info(f"  Page Size: {polling.page_size}")
    logger.info(f"  Cycle Deadline: {polling.cycle_deadline} seconds")
    logger.info(f"  Max Pages Per Cycle: {polling.max_pages_per_cycle}")


def _mask_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(parsed.password, "****")
    return url
