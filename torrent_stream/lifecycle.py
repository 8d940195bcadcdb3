import asyncio
from enum import Enum
from pathlib import Path

import structlog

from torrent_stream import instrumentation
from torrent_stream.config import Settings
from torrent_stream.engine.base import (
    AddOptions,
    SwarmEngine,
    SwarmSession,
    is_duplicate_error,
)
from torrent_stream.errors import InvalidTorrentError
from torrent_stream.magnet import info_hash_from_bytes, is_magnet, parse_magnet_link
from torrent_stream.metadata import add_with_timeout

log = structlog.get_logger(__name__)


class LifecycleState(str, Enum):
    # streams are open, no timer
    ACTIVE = "active"
    # no streams, teardown timer armed
    DRAINING = "draining"
    # timer fired, engine destroy in flight. Nothing can bring it back
    REMOVING = "removing"

    def __str__(self):
        return self.value


class TorrentEntry:
    def __init__(self, info_hash: str):
        self.info_hash = info_hash
        self.open_streams = 0
        self.state = LifecycleState.ACTIVE
        self.timer: asyncio.TimerHandle | None = None
        self.deadline: float | None = None
        self.removal: asyncio.Task | None = None
        # get_or_add calls waiting for the removal to finish
        self.waiters = 0

    def __repr__(self) -> str:
        return (
            f"TorrentEntry({self.info_hash}, state={self.state}, open_streams={self.open_streams})"
        )


class LifecycleManager:
    """
    Tracks how many consumers are reading from each torrent and removes
    torrents from the streaming engine once nobody has been watching for the
    seed grace period.

    Every identifier moves through ACTIVE -> DRAINING -> REMOVING, or from
    DRAINING back to ACTIVE when a stream opens before the timer fires. An
    identifier with no open streams and no pending teardown has no entry.
    """

    def __init__(self, engine: SwarmEngine, settings: Settings):
        self.engine = engine
        self.settings = settings
        self._entries: dict[str, TorrentEntry] = {}

    @property
    def grace_period(self) -> float:
        return self.settings.seed_time

    def add_options(self) -> AddOptions:
        return AddOptions(
            save_path=self.settings.download_dir,
            destroy_store=not self.settings.keep_downloaded_files,
            deselect=True,
        )

    def open_streams(self, info_hash: str) -> int:
        entry = self._entries.get(info_hash.lower())
        return entry.open_streams if entry else 0

    def total_open_streams(self) -> int:
        return sum(entry.open_streams for entry in self._entries.values())

    def state(self, info_hash: str) -> LifecycleState | None:
        entry = self._entries.get(info_hash.lower())
        return entry.state if entry else None

    def deadline(self, info_hash: str) -> float | None:
        """Loop time at which the pending teardown fires"""
        entry = self._entries.get(info_hash.lower())
        return entry.deadline if entry else None

    def is_teardown_pending(self, info_hash: str) -> bool:
        return self.state(info_hash) in (LifecycleState.DRAINING, LifecycleState.REMOVING)

    def stream_opened(self, info_hash: str, file_name: str) -> None:
        info_hash = info_hash.lower()
        log.info("stream opened", file=file_name, info_hash=info_hash)

        entry = self._entries.setdefault(info_hash, TorrentEntry(info_hash))
        entry.open_streams += 1
        instrumentation.OPEN_STREAMS.inc()

        if entry.state == LifecycleState.DRAINING:
            self._cancel_timer(entry)
            entry.state = LifecycleState.ACTIVE
            log.debug("teardown cancelled", info_hash=info_hash)

    def stream_closed(self, info_hash: str, file_name: str) -> None:
        info_hash = info_hash.lower()
        log.info("stream closed", file=file_name, info_hash=info_hash)

        entry = self._entries.setdefault(info_hash, TorrentEntry(info_hash))
        if entry.open_streams <= 0:
            # unpaired close, clamp at zero
            log.warning("stream closed without open stream", file=file_name, info_hash=info_hash)
        else:
            entry.open_streams -= 1
            instrumentation.OPEN_STREAMS.dec()

        if entry.open_streams > 0:
            return
        self.schedule_teardown(info_hash)

    def schedule_teardown(self, info_hash: str) -> None:
        """
        Arm the teardown timer. A pending timer is left untouched and its
        deadline is not extended.
        """
        info_hash = info_hash.lower()
        entry = self._entries.setdefault(info_hash, TorrentEntry(info_hash))
        if entry.state != LifecycleState.ACTIVE or entry.open_streams > 0:
            return

        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(self.grace_period, self._on_grace_elapsed, info_hash)
        entry.deadline = loop.time() + self.grace_period
        entry.state = LifecycleState.DRAINING
        log.debug("teardown scheduled", info_hash=info_hash, seconds=self.grace_period)

    def _cancel_timer(self, entry: TorrentEntry) -> None:
        if entry.timer:
            entry.timer.cancel()
        entry.timer = None
        entry.deadline = None

    def _on_grace_elapsed(self, info_hash: str) -> None:
        entry = self._entries.get(info_hash)
        if not entry or entry.state != LifecycleState.DRAINING:
            return
        entry.timer = None
        entry.deadline = None
        entry.state = LifecycleState.REMOVING
        entry.removal = asyncio.create_task(
            self._teardown(entry), name=f"teardown_{info_hash}"
        )

    async def _teardown(self, entry: TorrentEntry) -> None:
        session = self.engine.get(entry.info_hash)
        if session is None:
            log.debug("nothing to tear down", info_hash=entry.info_hash)
            self._finish_removal(entry)
            return

        try:
            await self.engine.destroy(
                session, destroy_store=not self.settings.keep_downloaded_files
            )
        except Exception as err:
            log.error("failed to remove torrent", name=session.name, exc_info=err)
            self._finish_removal(entry)
            return

        log.info("removed torrent", name=session.name, info_hash=entry.info_hash)
        instrumentation.TEARDOWNS.inc()
        if entry.open_streams or entry.waiters:
            log.info("torrent requested again, keeping seed file", info_hash=entry.info_hash)
        else:
            await self._delete_seed_file(session.name)
        self._finish_removal(entry)

    def _finish_removal(self, entry: TorrentEntry) -> None:
        entry.removal = None
        if self._entries.get(entry.info_hash) is not entry:
            return
        if entry.open_streams > 0:
            # opened while the destroy was in flight. The next get_or_add
            # starts a fresh session for them
            entry.state = LifecycleState.ACTIVE
            return
        del self._entries[entry.info_hash]

    async def _delete_seed_file(self, name: str) -> None:
        seed_path: Path = self.settings.seed_path(name)
        try:
            await asyncio.to_thread(seed_path.unlink)
            log.info("deleted seed file", file=seed_path.name)
        except FileNotFoundError:
            log.debug("no seed file to delete", file=seed_path.name)
        except OSError as err:
            log.error("failed to delete seed file", file=seed_path.name, exc_info=err)

    async def wait_for_removal(self, info_hash: str) -> None:
        entry = self._entries.get(info_hash.lower())
        if not entry or not entry.removal:
            return
        # a waiter wants the torrent back, its seed file must survive the teardown
        entry.waiters += 1
        try:
            await asyncio.shield(entry.removal)
        finally:
            entry.waiters -= 1

    async def _identify(self, uri: str | bytes) -> tuple[str | bytes, str | None]:
        """
        The source to add and its info hash when it can be known before the
        engine has metadata. Torrent files are read once so a teardown
        deleting the seed file cannot pull it from under the add.
        """
        if isinstance(uri, bytes):
            return uri, info_hash_from_bytes(uri)
        if is_magnet(uri):
            try:
                return uri, parse_magnet_link(uri)
            except ValueError:
                return uri, None
        path = Path(uri)
        if not await asyncio.to_thread(path.is_file):
            return uri, None
        data = await asyncio.to_thread(path.read_bytes)
        return data, info_hash_from_bytes(data)

    async def get_or_add(self, uri: str | bytes) -> SwarmSession | None:
        """
        Return the live session for the uri, adding it to the streaming
        engine if needed. A session that is being torn down is never handed
        out; the removal finishes first and a new session is added.
        """
        label = uri if isinstance(uri, str) else "<torrent bytes>"
        try:
            source, info_hash = await self._identify(uri)
        except (OSError, InvalidTorrentError) as err:
            log.error("failed to read torrent", uri=label, exc_info=err)
            return None

        if info_hash:
            await self.wait_for_removal(info_hash)
            if session := self.engine.get(info_hash):
                return session

        try:
            session = await add_with_timeout(
                self.engine, source, self.add_options(), self.settings.torrent_timeout
            )
        except Exception as err:
            if not is_duplicate_error(err):
                log.error("failed to add torrent", uri=label, exc_info=err)
                return None
            duplicate = (getattr(err, "info_hash", "") or info_hash or "").lower()
            if self.state(duplicate) == LifecycleState.REMOVING:
                await self.wait_for_removal(duplicate)
                return await self.get_or_add(uri)
            return self.engine.get(duplicate)

        if session is None:
            log.info("no metadata before timeout", uri=label)
            return None

        if self.state(session.info_hash) == LifecycleState.REMOVING:
            # same content reached through a source the hash was unknown for
            await self.wait_for_removal(session.info_hash)
            return await self.get_or_add(uri)
        return session

    async def close(self) -> None:
        removals = []
        for entry in list(self._entries.values()):
            self._cancel_timer(entry)
            if entry.removal:
                removals.append(entry.removal)
        if removals:
            await asyncio.gather(*removals, return_exceptions=True)
        instrumentation.OPEN_STREAMS.dec(self.total_open_streams())
        self._entries.clear()
