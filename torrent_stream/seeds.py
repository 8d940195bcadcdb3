import asyncio
import posixpath
import shutil
from pathlib import Path

import structlog

from torrent_stream.config import Settings
from torrent_stream.engine.base import SwarmEngine, is_duplicate_error
from torrent_stream.lifecycle import LifecycleManager
from torrent_stream.logging import timestamped
from torrent_stream.magnet import fetch_torrent_file, info_hash_from_bytes

log = structlog.get_logger(__name__)

SEED_EXTENSION = ".torrent"


class SeedStore:
    """
    Torrent files of sessions that have not finished seeding. A file is
    written when a stream is first served from a torrent file url, deleted by
    the lifecycle manager on teardown and picked up again on restart.
    """

    def __init__(self, settings: Settings, engine: SwarmEngine, manager: LifecycleManager):
        self.settings = settings
        self.engine = engine
        self.manager = manager

    async def save_or_get_torrent_file(self, uri: str, file_path: str) -> Path:
        # seed files are named after the torrent, the first segment of any file path
        root_folder = posixpath.normpath(file_path.replace("\\", "/")).split("/")[0]
        torrent_filename = f"{root_folder}{SEED_EXTENSION}"
        seed_path = self.settings.seed_dir / torrent_filename

        if seed_path.exists():
            return seed_path

        data = await fetch_torrent_file(uri)
        if not seed_path.exists():
            await asyncio.to_thread(_write_file, seed_path, data)
            log.info("archived torrent file", file=torrent_filename)

        if self.settings.keep_torrent_files:
            torrent_path = self.settings.torrent_file_dir / torrent_filename
            if not torrent_path.exists():
                self.settings.torrent_file_dir.mkdir(parents=True, exist_ok=True)
                await asyncio.to_thread(shutil.copyfile, seed_path, torrent_path)

        return seed_path

    @timestamped()
    async def reconcile(self) -> int:
        """
        Re-admit every torrent left in the seed directory and give each a
        fresh grace period. Returns the number of torrents re-admitted.
        """
        seed_dir = self.settings.seed_dir
        if not seed_dir.is_dir():
            log.info("no seed directory, nothing to seed", path=str(seed_dir))
            return 0

        files = sorted(await asyncio.to_thread(lambda: list(seed_dir.iterdir())))
        seeded = 0
        for path in files:
            if path.suffix != SEED_EXTENSION or not path.is_file():
                continue
            try:
                if await self._seed(path):
                    seeded += 1
            except Exception as err:
                log.error("failed to seed torrent file", file=path.name, exc_info=err)

        log.info("seed directory reconciled", seeded=seeded, path=str(seed_dir))
        return seeded

    async def _seed(self, path: Path) -> bool:
        data = await asyncio.to_thread(path.read_bytes)
        info_hash = info_hash_from_bytes(data)

        if self.manager.is_teardown_pending(info_hash):
            log.debug("seed already scheduled", file=path.name, info_hash=info_hash)
            return False

        try:
            session = await self.engine.add(data, self.manager.add_options())
        except Exception as err:
            if not is_duplicate_error(err):
                raise
            session = self.engine.get(info_hash)
        if session is None:
            return False

        log.info("seeding torrent", file=path.name, info_hash=info_hash)
        self.manager.schedule_teardown(info_hash)
        return True


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
