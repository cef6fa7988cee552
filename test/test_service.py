"""Tests for the ResolutionSync service wiring."""

import logging
import os
from unittest.mock import AsyncMock, patch

import pytest

from resolution_sync.cns_source import CnsEventSource
from resolution_sync.config import DEFAULT_CNS_REGISTRY, CnsChainConfig, SyncConfig, ZnsChainConfig
from resolution_sync.decoder import CnsEventDecoder, ZnsEventDecoder
from resolution_sync.models import Blockchain
from resolution_sync.scheduler import CycleReport
from resolution_sync.service import ResolutionSync
from resolution_sync.store import ProjectionStore
from resolution_sync.zns_source import ZnsEventSource


@pytest.fixture
def config():
    return SyncConfig(
        database_url="sqlite://",
        cns=CnsChainConfig(
            rpc_url="https://test.rpc",
            registries={DEFAULT_CNS_REGISTRY: Blockchain.CNS},
        ),
        zns=ZnsChainConfig(
            viewblock_url="https://api.viewblock.io/v1/zilliqa",
            viewblock_api_key="key",
            rpc_url="https://api.zilliqa.com",
        ),
    )


class TestResolutionSync:
    """Wiring of sources, decoders and synchronizers."""

    def test_builds_one_synchronizer_per_chain(self, config):
        service = ResolutionSync(config, store=ProjectionStore.from_url("sqlite://"))

        assert [s.chain for s in service.synchronizers] == ["ETH", "ZIL"]
        eth, zil = service.synchronizers
        assert isinstance(eth.source, CnsEventSource)
        assert isinstance(eth.decoder, CnsEventDecoder)
        assert isinstance(zil.source, ZnsEventSource)
        assert isinstance(zil.decoder, ZnsEventDecoder)
        assert eth.polling is config.cns.polling
        assert service.scheduler.synchronizers == service.synchronizers

    def test_disabled_chain_is_not_built(self, config):
        config = SyncConfig(database_url="sqlite://", zns=config.zns)
        service = ResolutionSync(config)
        assert [s.chain for s in service.synchronizers] == ["ZIL"]

    def test_from_env(self):
        env = {"DISABLE_ZNS": "true", "CNS_RPC_URL": "https://test.rpc", "DATABASE_URL": "sqlite://"}
        with patch.dict(os.environ, env, clear=True):
            service = ResolutionSync.from_env()
        assert [s.chain for s in service.synchronizers] == ["ETH"]

    @pytest.mark.asyncio
    async def test_run_once_creates_schema_and_closes(self, config):
        store = ProjectionStore.from_url("sqlite://")
        service = ResolutionSync(config, store=store)
        report = CycleReport(chain="ETH", network_id=1, status="committed")

        with patch.object(service.scheduler, "run_once", AsyncMock(return_value=[report])), \
                patch.object(service, "close", AsyncMock()) as close:
            reports = await service.run_once()

        assert reports == [report]
        close.assert_awaited_once()
        assert store.get_checkpoint("ETH", 1) is None

    def test_reports_are_logged_by_status(self, config, caplog):
        with caplog.at_level(logging.DEBUG, logger="resolution_sync.service"):
            ResolutionSync._log_report(CycleReport(chain="ETH", network_id=1, status="failed"))
            ResolutionSync._log_report(CycleReport(chain="ZIL", network_id=1, status="committed"))

        levels = [(r.levelname, r.message.split()[0]) for r in caplog.records]
        assert levels == [("ERROR", "ETH/1"), ("INFO", "ZIL/1")]
