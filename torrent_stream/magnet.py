import hashlib
import posixpath
import re
from datetime import datetime
from typing import Any

import aiohttp
import bencodepy
import structlog

from torrent_stream import instrumentation
from torrent_stream.errors import InvalidTorrentError
from torrent_stream.torrent import FileInfo, TorrentInfo

log = structlog.get_logger(__name__)

FETCH_TIMEOUT = 30


def is_magnet(uri: str) -> bool:
    return uri.startswith("magnet:")


def parse_magnet_link(uri: str) -> str:
    match = re.search("btih:([a-fA-F0-9]{40})", uri)
    if match:
        return match.group(1).lower()
    raise ValueError(f"Invalid magnet link: {uri}")


def make_magnet_link(info_hash: str) -> str:
    return f"magnet:?xt=urn:btih:{info_hash}"


def decode_metadata(data: bytes) -> dict[bytes, Any]:
    try:
        metadata = bencodepy.decode(data)
    except (bencodepy.BencodeDecodeError, IndexError, TypeError, ValueError) as err:
        raise InvalidTorrentError(f"malformed bencode: {err}") from err
    if not isinstance(metadata, dict) or not isinstance(metadata.get(b"info"), dict):
        raise InvalidTorrentError("torrent has no info dictionary")
    return metadata


def info_hash_from_bytes(data: bytes) -> str:
    """
    SHA-1 of the canonically encoded info dictionary. bencode dictionaries are
    always written with sorted keys so re-encoding the decoded structure
    reproduces the original bytes.
    """
    metadata = decode_metadata(data)
    return hashlib.sha1(bencodepy.encode(metadata[b"info"])).hexdigest()


def _text(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def torrent_info_from_bytes(data: bytes) -> TorrentInfo:
    metadata = decode_metadata(data)
    info: dict[bytes, Any] = metadata[b"info"]
    try:
        name = _text(info[b"name"])
        if b"files" in info:
            entries = [
                ([_text(segment) for segment in f[b"path"]], int(f[b"length"]))
                for f in info[b"files"]
            ]
        else:
            entries = [([name], int(info[b"length"]))]
    except (KeyError, TypeError, ValueError) as err:
        raise InvalidTorrentError(f"incomplete info dictionary: {err}") from err

    # single file torrents live at the root, multi file torrents under the name
    multi_file = b"files" in info
    files = [
        FileInfo(
            name=segments[-1],
            path=posixpath.join(name, *segments) if multi_file else segments[-1],
            size=length,
        )
        for segments, length in entries
    ]
    torrent = TorrentInfo(
        name=name,
        info_hash=hashlib.sha1(bencodepy.encode(info)).hexdigest(),
        size=sum(f.size for f in files),
        files=files,
    )
    log.info("got info from torrent file", name=torrent.name, info_hash=torrent.info_hash)
    return torrent


async def fetch_torrent_file(url: str) -> bytes:
    start_time = datetime.now()
    status_code: str = "2xx"
    error = False
    try:
        async with aiohttp.ClientSession() as session, session.get(
            url, timeout=aiohttp.ClientTimeout(total=FETCH_TIMEOUT)
        ) as response:
            status_code = f"{response.status//100}xx"
            response.raise_for_status()
            return await response.read()
    except Exception:
        error = True
        raise
    finally:
        instrumentation.HTTP_CLIENT_REQUEST_DURATION.labels(
            client="torrent_file",
            method="GET",
            url=url,
            error=error,
            status_code=status_code,
        ).observe((datetime.now() - start_time).total_seconds())
