from typing import Any

from pydantic import BaseModel, field_validator


class FileInfo(BaseModel):
    name: str
    path: str
    size: int
    url: str | None = None


class ActiveFileInfo(FileInfo):
    progress: float = 0.0
    downloaded: int = 0


class TorrentInfo(BaseModel):
    name: str
    info_hash: str
    size: int
    files: list[FileInfo] = []

    @field_validator("info_hash", mode="before")
    @classmethod
    def consistent_info_hash(cls: Any, v: Any):
        if isinstance(v, str):
            # engines report lower case, magnet links may not
            return v.lower()
        return v


class ActiveTorrentInfo(TorrentInfo):
    progress: float = 0.0
    downloaded: int = 0
    uploaded: int = 0
    download_speed: float = 0.0
    upload_speed: float = 0.0
    peers: int = 0
    open_streams: int = 0
    files: list[ActiveFileInfo] = []


class Stats(BaseModel):
    uptime: str
    open_streams: int
    download_speed: float
    upload_speed: float
    active_torrents: list[ActiveTorrentInfo]
