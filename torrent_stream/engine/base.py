import asyncio
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncGenerator

from pydantic import BaseModel

from torrent_stream.errors import TorrentStreamError

DUPLICATE_TORRENT_PATTERN = re.compile(
    r"(cannot add duplicate torrent|duplicate torrent|torrent already exists)",
    re.IGNORECASE,
)


class SwarmEngineError(TorrentStreamError):
    pass


class DuplicateTorrentError(SwarmEngineError):
    def __init__(self, info_hash: str):
        super().__init__(f"Cannot add duplicate torrent {info_hash}")
        self.info_hash = info_hash


def is_duplicate_error(err: BaseException) -> bool:
    """
    Two requests racing to add the same torrent is expected. Engines do not
    always raise a dedicated type so the message is matched as well.
    """
    if isinstance(err, DuplicateTorrentError):
        return True
    return bool(DUPLICATE_TORRENT_PATTERN.search(str(err)))


class AddOptions(BaseModel):
    save_path: Path | None = None
    # delete downloaded data when the session is destroyed
    destroy_store: bool = False
    # start with every file deselected, streams select what they read
    deselect: bool = False
    # metadata only, nothing is written to the download directory
    in_memory: bool = False


class SwarmFile(ABC):
    name: str
    path: str
    length: int

    @property
    @abstractmethod
    def progress(self) -> float:
        ...

    @property
    @abstractmethod
    def downloaded(self) -> int:
        ...

    @abstractmethod
    def select(self) -> None:
        ...

    @abstractmethod
    def stream(self, start: int = 0, end: int | None = None) -> AsyncGenerator[bytes, None]:
        """
        Yield the bytes of the file from start up to and including end,
        waiting for the pieces as they arrive from the swarm
        """
        ...


class SwarmSession(ABC):
    name: str
    info_hash: str

    def __str__(self) -> str:
        return f"{self.name} ({self.info_hash})"

    @property
    @abstractmethod
    def length(self) -> int:
        ...

    @property
    @abstractmethod
    def files(self) -> list[SwarmFile]:
        ...

    @property
    @abstractmethod
    def num_peers(self) -> int:
        ...

    @property
    @abstractmethod
    def download_speed(self) -> float:
        ...

    @property
    @abstractmethod
    def upload_speed(self) -> float:
        ...

    @property
    @abstractmethod
    def progress(self) -> float:
        ...

    @property
    @abstractmethod
    def downloaded(self) -> int:
        ...

    @property
    @abstractmethod
    def uploaded(self) -> int:
        ...

    def get_file(self, path: str) -> SwarmFile | None:
        return next((f for f in self.files if f.path == path), None)


class SwarmEngine(ABC):
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def add(
        self,
        source: str | bytes,
        options: AddOptions,
        stop: asyncio.Event | None = None,
    ) -> SwarmSession | None:
        """
        Add a magnet link, torrent file path or raw torrent bytes and wait for
        the metadata. Returns None when stop is set before the metadata
        arrives; the half-added session is discarded by the engine.
        """
        ...

    @abstractmethod
    def get(self, info_hash: str) -> SwarmSession | None:
        ...

    @abstractmethod
    async def destroy(self, session: SwarmSession, destroy_store: bool = False) -> None:
        """Remove the session. Destroying an already removed session is a no-op."""
        ...

    @abstractmethod
    def sessions(self) -> list[SwarmSession]:
        ...

    @property
    @abstractmethod
    def download_speed(self) -> float:
        ...

    @property
    @abstractmethod
    def upload_speed(self) -> float:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
