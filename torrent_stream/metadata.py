import asyncio

import structlog

from torrent_stream import human, instrumentation
from torrent_stream.engine.base import AddOptions, SwarmEngine, SwarmSession
from torrent_stream.torrent import FileInfo, TorrentInfo

log = structlog.get_logger(__name__)


async def add_with_timeout(
    engine: SwarmEngine,
    source: str | bytes,
    options: AddOptions,
    timeout: float,
) -> SwarmSession | None:
    """
    Race the engine's metadata against the timeout. Exactly one side wins: if
    the timeout fires first the stop token tells the engine to discard the
    pending session and None is returned, even if the metadata lands a moment
    later. Engine errors propagate.
    """
    stop = asyncio.Event()
    pending = asyncio.create_task(engine.add(source, options, stop=stop))
    done, _ = await asyncio.wait([pending], timeout=timeout)
    if pending in done:
        return pending.result()

    stop.set()
    pending.cancel()
    # the engine cleans up after cancellation, its result is discarded
    pending.add_done_callback(_discard_result)
    return None


def _discard_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    if err := task.exception():
        log.debug("discarded add after timeout", exc_info=err)


def summarize(session: SwarmSession) -> TorrentInfo:
    return TorrentInfo(
        name=session.name,
        info_hash=session.info_hash,
        size=session.length,
        files=[FileInfo(name=f.name, path=f.path, size=f.length) for f in session.files],
    )


class MetadataAcquirer:
    """
    Resolves torrent metadata on an engine dedicated to metadata lookups so
    they never count against the streaming engine's connection limits.
    """

    def __init__(self, engine: SwarmEngine, timeout: float):
        self.engine = engine
        self.timeout = timeout

    async def resolve(self, uri: str) -> TorrentInfo | None:
        try:
            session = await add_with_timeout(
                self.engine,
                uri,
                AddOptions(in_memory=True, destroy_store=True),
                self.timeout,
            )
        except Exception as err:
            log.error("failed to fetch torrent info", uri=uri, exc_info=err)
            instrumentation.METADATA_REQUESTS.labels(result="error").inc()
            return None

        if session is None:
            log.info("no metadata before timeout", uri=uri, timeout=self.timeout)
            instrumentation.METADATA_REQUESTS.labels(result="timeout").inc()
            return None

        info = summarize(session)
        await self.engine.destroy(session, destroy_store=True)
        log.info("fetched torrent info", name=info.name, size=human.bytes(info.size))
        instrumentation.METADATA_REQUESTS.labels(result="metadata").inc()
        return info
