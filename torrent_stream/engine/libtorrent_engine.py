import asyncio
import os
import tempfile
from pathlib import Path
from typing import AsyncGenerator

import libtorrent as lt
import structlog

from torrent_stream.engine.base import (
    AddOptions,
    DuplicateTorrentError,
    SwarmEngine,
    SwarmEngineError,
    SwarmFile,
    SwarmSession,
)
from torrent_stream.magnet import fetch_torrent_file

log = structlog.get_logger(__name__)

POLL_INTERVAL = 0.1
DESTROY_TIMEOUT = 10
# pieces requested ahead of the reader
READAHEAD_PIECES = 8
NORMAL_PRIORITY = 4


class LibtorrentFile(SwarmFile):
    def __init__(self, session: "LibtorrentSession", index: int):
        files = session.torrent_info.files()
        self.session = session
        self.index = index
        self.name = files.file_name(index)
        self.path = files.file_path(index).replace(os.sep, "/")
        self.length = files.file_size(index)
        self.offset = files.file_offset(index)

    @property
    def downloaded(self) -> int:
        return self.session.handle.file_progress(flags=lt.file_progress_flags_t.piece_granularity)[
            self.index
        ]

    @property
    def progress(self) -> float:
        if not self.length:
            return 1.0
        return self.downloaded / self.length

    def select(self) -> None:
        self.session.handle.file_priority(self.index, NORMAL_PRIORITY)

    def disk_path(self) -> Path:
        return self.session.save_path / self.path

    async def stream(self, start: int = 0, end: int | None = None) -> AsyncGenerator[bytes, None]:
        if end is None or end >= self.length:
            end = self.length - 1
        if start > end:
            return

        handle = self.session.handle
        piece_length = self.session.torrent_info.piece_length()
        first_piece = (self.offset + start) // piece_length
        last_piece = (self.offset + end) // piece_length
        self.select()

        position = start
        for piece in range(first_piece, last_piece + 1):
            for ahead in range(piece, min(piece + READAHEAD_PIECES, last_piece + 1)):
                handle.set_piece_deadline(ahead, (ahead - piece) * 100)
            while not handle.have_piece(piece):
                await asyncio.sleep(POLL_INTERVAL)

            piece_end = min((piece + 1) * piece_length - self.offset - 1, end)
            chunk = await asyncio.to_thread(
                _read_range, self.disk_path(), position, piece_end - position + 1
            )
            position = piece_end + 1
            yield chunk


def _read_range(path: Path, offset: int, size: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        return f.read(size)


class LibtorrentSession(SwarmSession):
    def __init__(self, handle: "lt.torrent_handle", save_path: Path):
        self.handle = handle
        self.save_path = save_path
        self.torrent_info = handle.torrent_file()
        self.name = self.torrent_info.name()
        self.info_hash = str(self.torrent_info.info_hashes().v1)
        self._files = [LibtorrentFile(self, i) for i in range(self.torrent_info.num_files())]

    @property
    def length(self) -> int:
        return self.torrent_info.total_size()

    @property
    def files(self) -> list[SwarmFile]:
        return list(self._files)

    @property
    def num_peers(self) -> int:
        return self.handle.status().num_peers

    @property
    def download_speed(self) -> float:
        return self.handle.status().download_rate

    @property
    def upload_speed(self) -> float:
        return self.handle.status().upload_rate

    @property
    def progress(self) -> float:
        return self.handle.status().progress

    @property
    def downloaded(self) -> int:
        return self.handle.status().total_done

    @property
    def uploaded(self) -> int:
        return self.handle.status().all_time_upload


class LibtorrentEngine(SwarmEngine):
    def __init__(
        self,
        download_limit: int = 0,
        upload_limit: int = 0,
        max_connections: int = 50,
        listen_interfaces: str = "0.0.0.0:6881,[::]:6881",
    ):
        self.max_connections = max_connections
        self.session = lt.session(
            {
                "listen_interfaces": listen_interfaces,
                "alert_mask": lt.alert.category_t.error_notification,
                "download_rate_limit": download_limit,
                "upload_rate_limit": upload_limit,
            }
        )
        self._sessions: dict[str, LibtorrentSession] = {}

    async def _params(self, source: str | bytes, options: AddOptions) -> "lt.add_torrent_params":
        if isinstance(source, str) and source.startswith(("http://", "https://")):
            source = await fetch_torrent_file(source)

        if isinstance(source, bytes):
            params = lt.add_torrent_params()
            params.ti = lt.torrent_info(lt.bdecode(source))
        elif source.startswith("magnet:"):
            params = lt.parse_magnet_uri(source)
        else:
            params = lt.add_torrent_params()
            params.ti = lt.torrent_info(source)

        save_path = options.save_path or Path(tempfile.gettempdir())
        if options.in_memory:
            save_path = Path(tempfile.gettempdir()) / "torrent-stream-metadata"
            params.flags |= lt.torrent_flags.upload_mode
        params.save_path = str(save_path)
        params.max_connections = self.max_connections
        return params

    async def add(
        self,
        source: str | bytes,
        options: AddOptions,
        stop: asyncio.Event | None = None,
    ) -> SwarmSession | None:
        try:
            params = await self._params(source, options)
        except RuntimeError as err:
            raise SwarmEngineError(f"invalid torrent source: {err}") from err

        info_hash = str(params.info_hashes.v1) if params.info_hashes.has_v1() else ""
        if info_hash in self._sessions:
            raise DuplicateTorrentError(info_hash)

        try:
            handle = self.session.add_torrent(params)
        except RuntimeError as err:
            raise SwarmEngineError(str(err)) from err

        try:
            while not handle.status().has_metadata:
                if stop and stop.is_set():
                    self._remove(handle, options.destroy_store)
                    return None
                await asyncio.sleep(POLL_INTERVAL)
        except asyncio.CancelledError:
            self._remove(handle, options.destroy_store)
            raise

        if options.deselect:
            handle.prioritize_files([0] * handle.torrent_file().num_files())

        session = LibtorrentSession(handle, Path(params.save_path))
        self._sessions[session.info_hash] = session
        log.info("added torrent", name=session.name, info_hash=session.info_hash)
        return session

    def _remove(self, handle: "lt.torrent_handle", destroy_store: bool) -> None:
        if not handle.is_valid():
            return
        flags = lt.options_t.delete_files if destroy_store else 0
        self.session.remove_torrent(handle, flags)

    def get(self, info_hash: str) -> SwarmSession | None:
        return self._sessions.get(info_hash.lower())

    async def destroy(self, session: SwarmSession, destroy_store: bool = False) -> None:
        torrent = self._sessions.pop(session.info_hash, None)
        if torrent is None:
            return
        self._remove(torrent.handle, destroy_store)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + DESTROY_TIMEOUT
        while torrent.handle.is_valid() and loop.time() < deadline:
            await asyncio.sleep(POLL_INTERVAL)

    def sessions(self) -> list[SwarmSession]:
        return list(self._sessions.values())

    @property
    def download_speed(self) -> float:
        return sum(s.download_speed for s in self._sessions.values())

    @property
    def upload_speed(self) -> float:
        return sum(s.upload_speed for s in self._sessions.values())

    async def close(self) -> None:
        for torrent in list(self._sessions.values()):
            await self.destroy(torrent)
        self.session.pause()
