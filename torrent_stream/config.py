import os
import shutil
import tempfile
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger(__name__)

MIB = 1024 * 1024


def env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.lower() == "true"


def env_int(name: str, default: int) -> int:
    """
    Numeric settings fall back to the default when unset, zero or garbage
    """
    try:
        return int(os.getenv(name) or 0) or default
    except ValueError:
        log.warning("invalid numeric setting, using default", name=name, value=os.getenv(name))
        return default


APP_NAME = os.getenv("APP_NAME", "Torrent Stream Server")
BUILD_VERSION: str = os.getenv("BUILD_VERSION", "UNKNOWN")
VERSION = os.getenv("BUILD_VERSION") or "0.0.1"
HOST: str = os.getenv("LISTEN_HOST", "0.0.0.0")
PORT: int = env_int("LISTEN_PORT", 58827)

DOWNLOAD_DIR = Path(
    os.getenv("DOWNLOAD_DIR") or os.path.join(tempfile.gettempdir(), "torrent-stream-server")
)
TORRENT_FILE_DIR = Path(os.getenv("TORRENT_FILE_DIR") or DOWNLOAD_DIR / "torrents")
# torrent files of sessions that did not finish their seed period
SEED_DIR = Path(os.getenv("SEED_DIR") or DOWNLOAD_DIR / "seed")

AUTO_SEED = env_bool("AUTO_SEED")
KEEP_DOWNLOADED_FILES = env_bool("KEEP_DOWNLOADED_FILES")
KEEP_TORRENT_FILES = env_bool("KEEP_TORRENT_FILES")

MAX_CONNS_PER_TORRENT = env_int("MAX_CONNS_PER_TORRENT", 50)
DOWNLOAD_SPEED_LIMIT = env_int("DOWNLOAD_SPEED_LIMIT", 20 * MIB)
UPLOAD_SPEED_LIMIT = env_int("UPLOAD_SPEED_LIMIT", 1 * MIB)

# milliseconds
SEED_TIME = env_int("SEED_TIME", 60 * 1000)
TORRENT_TIMEOUT = env_int("TORRENT_TIMEOUT", 5 * 1000)


class Settings(BaseModel):
    download_dir: Path = DOWNLOAD_DIR
    torrent_file_dir: Path = TORRENT_FILE_DIR
    seed_dir: Path = SEED_DIR
    auto_seed: bool = AUTO_SEED
    keep_downloaded_files: bool = KEEP_DOWNLOADED_FILES
    keep_torrent_files: bool = KEEP_TORRENT_FILES
    max_conns_per_torrent: int = Field(default=MAX_CONNS_PER_TORRENT, gt=0)
    download_speed_limit: int = Field(default=DOWNLOAD_SPEED_LIMIT, gt=0)
    upload_speed_limit: int = Field(default=UPLOAD_SPEED_LIMIT, gt=0)
    seed_time_ms: int = Field(default=SEED_TIME, ge=0)
    torrent_timeout_ms: int = Field(default=TORRENT_TIMEOUT, gt=0)

    @property
    def seed_time(self) -> float:
        """Grace period in seconds"""
        return self.seed_time_ms / 1000

    @property
    def torrent_timeout(self) -> float:
        """Metadata timeout in seconds"""
        return self.torrent_timeout_ms / 1000

    def seed_path(self, name: str) -> Path:
        return self.seed_dir / f"{name}.torrent"


def load() -> Settings:
    return Settings()


def prepare_directories(settings: Settings) -> None:
    """
    Create the working directories. Previous downloads are purged unless
    KEEP_DOWNLOADED_FILES is set; the seed and torrent file directories survive
    so unfinished seeds can be picked up again.
    """
    settings.download_dir.mkdir(parents=True, exist_ok=True)
    if not settings.keep_downloaded_files:
        preserved = {settings.seed_dir.resolve(), settings.torrent_file_dir.resolve()}
        for entry in settings.download_dir.iterdir():
            if entry.resolve() in preserved:
                continue
            try:
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as err:
                log.error("failed to purge download entry", path=str(entry), exc_info=err)
        log.info("purged download directory", path=str(settings.download_dir))
    settings.seed_dir.mkdir(parents=True, exist_ok=True)
    if settings.keep_torrent_files:
        settings.torrent_file_dir.mkdir(parents=True, exist_ok=True)
