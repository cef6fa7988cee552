"""
Resolution sync service.

This module wires the configured chains into synchronizers and runs them
under the sync scheduler.
"""

import asyncio
import logging

from .config import SyncConfig
from .cns_source import CnsEventSource
from .decoder import CnsEventDecoder, ZnsEventDecoder
from .scheduler import ChainSynchronizer, CycleReport, SyncScheduler
from .store import ProjectionStore
from .zns_source import ZnsEventSource

# Get logger for this module
logger = logging.getLogger(__name__)


class ResolutionSync:
    """
    Main service that keeps the domain projection in sync with the registries.

    This class focuses on wiring and lifecycle management; cycles are run by
    the ChainSynchronizer instances it builds.
    """

    def __init__(self, config: SyncConfig, store: ProjectionStore | None = None):
        """
        Initialize the service.

        Args:
            config: Service configuration
            store: Projection store, built from ``config.database_url`` when omitted
        """
        self.config = config
        self.store = store or ProjectionStore.from_url(config.database_url)
        self.synchronizers: list[ChainSynchronizer] = []
        self._sources: list[CnsEventSource | ZnsEventSource] = []

        if config.cns:
            source = CnsEventSource(config.cns)
            decoder = CnsEventDecoder(config.cns.registries, config.cns.network_id)
            self._add(source, decoder, config.cns.polling)

        if config.zns:
            source = ZnsEventSource(config.zns)
            decoder = ZnsEventDecoder(config.zns.registry, config.zns.network_id)
            self._add(source, decoder, config.zns.polling)

        self.scheduler = SyncScheduler(self.synchronizers)
        logger.info(
            f"ResolutionSync initialized for {', '.join(s.chain for s in self.synchronizers)}"
        )

    def _add(self, source, decoder, polling) -> None:
        synchronizer = ChainSynchronizer(
            source=source,
            decoder=decoder,
            store=self.store,
            polling=polling,
        )
        synchronizer.add_listener(self._log_report)
        self._sources.append(source)
        self.synchronizers.append(synchronizer)

    @classmethod
    def from_env(cls) -> "ResolutionSync":
        """
        Create a ResolutionSync instance from environment variables.

        Raises:
            ValueError: If required environment variables are missing
        """
        config = SyncConfig.from_env()
        config.log_config()
        return cls(config)

    @staticmethod
    def _log_report(report: CycleReport) -> None:
        match report.status:
            case "committed":
                logger.info(str(report))
            case "failed":
                logger.error(str(report))
            case "skipped":
                logger.warning(str(report))
            case _:
                logger.debug(str(report))

    async def _prepare(self) -> None:
        await asyncio.to_thread(self.store.create_schema)

    async def run_once(self) -> list[CycleReport]:
        """Run a single cycle for every chain."""
        await self._prepare()
        try:
            return await self.scheduler.run_once()
        finally:
            await self.close()

    async def run(self) -> None:
        """Run the scheduler until stop() is called."""
        logger.info("Resolution sync starting...")
        await self._prepare()
        try:
            await self.scheduler.run()
        finally:
            await self.close()
            logger.info("Resolution sync stopped")

    async def close(self) -> None:
        for source in self._sources:
            try:
                await source.close()
            except Exception as e:
                logger.warning(f"Error closing {source.chain} source: {e}")

    def stop(self) -> None:
        """Stop the service."""
        self.scheduler.stop()

    def get_metrics(self) -> dict[str, dict]:
        return {
            s.chain: {**s.get_metrics(), **s.source.get_metrics(), **s.decoder.get_metrics()}
            for s in self.synchronizers
        }
