from datetime import datetime

import structlog

from torrent_stream import config
from torrent_stream.config import Settings
from torrent_stream.engine.base import SwarmEngine
from torrent_stream.lifecycle import LifecycleManager
from torrent_stream.metadata import MetadataAcquirer
from torrent_stream.seeds import SeedStore
from torrent_stream.stats import get_stats
from torrent_stream.torrent import Stats

log = structlog.get_logger(__name__)


class TorrentServer:
    """
    Everything a running server owns. The streaming engine and the metadata
    engine are separate instances so metadata lookups never use streaming
    connections.
    """

    def __init__(self, settings: Settings, stream_engine: SwarmEngine, info_engine: SwarmEngine):
        self.settings = settings
        self.stream_engine = stream_engine
        self.info_engine = info_engine
        self.manager = LifecycleManager(stream_engine, settings)
        self.acquirer = MetadataAcquirer(info_engine, settings.torrent_timeout)
        self.seeds = SeedStore(settings, stream_engine, self.manager)
        self.launched_at = datetime.now()

    async def start(self) -> None:
        config.prepare_directories(self.settings)
        if not self.settings.auto_seed:
            return
        try:
            await self.seeds.reconcile()
        except Exception as err:
            log.error("failed to auto seed torrents", exc_info=err)

    async def stop(self) -> None:
        await self.manager.close()
        await self.stream_engine.close()
        await self.info_engine.close()

    def stats(self) -> Stats:
        return get_stats(self.stream_engine, self.manager, self.launched_at)
