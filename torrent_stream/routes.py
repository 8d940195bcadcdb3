import asyncio
import mimetypes
import re
from typing import Annotated, AsyncGenerator

import aiohttp
import structlog
from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from torrent_stream import magnet
from torrent_stream.engine.base import SwarmFile
from torrent_stream.errors import InvalidTorrentError
from torrent_stream.lifecycle import LifecycleManager
from torrent_stream.server import TorrentServer
from torrent_stream.torrent import Stats, TorrentInfo

router = APIRouter()

log = structlog.get_logger(__name__)

RANGE_PATTERN = re.compile(r"bytes=(\d*)-(\d*)")


def get_server(request: Request) -> TorrentServer:
    return request.app.state.server


def is_torrent_url(uri: str) -> bool:
    return uri.startswith(("http://", "https://"))


def parse_range(header: str | None, length: int) -> tuple[int, int] | None:
    """
    Parse a single "bytes=start-end" range into inclusive offsets. Returns
    None when the header is absent; raises ValueError when it cannot be served.
    """
    if not header:
        return None
    match = RANGE_PATTERN.fullmatch(header.strip())
    if not match or match.groups() == ("", ""):
        raise ValueError(f"unsupported range: {header}")
    start, end = match.groups()
    if length <= 0:
        raise ValueError(f"unsatisfiable range: {header}")
    if not start:
        # suffix range, the last n bytes
        if int(end) == 0:
            raise ValueError(f"unsatisfiable range: {header}")
        return max(length - int(end), 0), length - 1
    first = int(start)
    last = min(int(end), length - 1) if end else length - 1
    if first > last:
        raise ValueError(f"unsatisfiable range: {header}")
    return first, last


@router.get("/stats")
async def stats(request: Request) -> Stats:
    return get_server(request).stats()


@router.get("/torrents/info", response_model_exclude_none=True)
async def torrent_info(
    request: Request,
    uri: Annotated[str, Query(description="magnet link or torrent file url")],
) -> TorrentInfo:
    server = get_server(request)
    info: TorrentInfo | None = None
    if is_torrent_url(uri):
        try:
            info = magnet.torrent_info_from_bytes(await magnet.fetch_torrent_file(uri))
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            log.error("failed to fetch torrent file", uri=uri, exc_info=err)
            raise HTTPException(status_code=502, detail="Failed to fetch torrent file") from err
        except InvalidTorrentError as err:
            raise HTTPException(status_code=400, detail=str(err)) from err
    else:
        info = await server.acquirer.resolve(uri)

    if not info:
        raise HTTPException(status_code=404, detail="No metadata found")

    for f in info.files:
        f.url = str(request.url_for("stream_file").include_query_params(uri=uri, path=f.path))
    return info


class ConsumerStream:
    """
    One consumer reading a file. The stream counts as open from the moment
    the response is built, so a pending teardown is cancelled before any byte
    is sent. It is closed exactly once, by the body when it ends or by the
    response's background task when the body never ran.
    """

    def __init__(self, manager: LifecycleManager, info_hash: str, file: SwarmFile):
        self.manager = manager
        self.info_hash = info_hash
        self.file = file
        self.closed = False
        manager.stream_opened(info_hash, file.name)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.manager.stream_closed(self.info_hash, self.file.name)

    async def body(self, start: int, end: int) -> AsyncGenerator[bytes, None]:
        try:
            async for chunk in self.file.stream(start, end):
                yield chunk
        finally:
            self.close()


@router.get("/stream", name="stream_file")
async def stream_file(
    request: Request,
    uri: Annotated[str, Query(description="magnet link or torrent file url")],
    path: Annotated[str, Query(description="path of the file inside the torrent")],
    range_header: Annotated[str | None, Header(alias="Range")] = None,
) -> StreamingResponse:
    server = get_server(request)
    source = uri
    if is_torrent_url(uri):
        try:
            source = str(await server.seeds.save_or_get_torrent_file(uri, path))
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            log.error("failed to fetch torrent file", uri=uri, exc_info=err)
            raise HTTPException(status_code=502, detail="Failed to fetch torrent file") from err

    session = await server.manager.get_or_add(source)
    if not session:
        raise HTTPException(status_code=404, detail="Torrent not found")
    file = session.get_file(path)
    if not file:
        raise HTTPException(status_code=404, detail="File not found")

    try:
        byte_range = parse_range(range_header, file.length)
    except ValueError as err:
        raise HTTPException(
            status_code=416,
            detail=str(err),
            headers={"Content-Range": f"bytes */{file.length}"},
        ) from err

    start, end = byte_range or (0, file.length - 1)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Length": str(end - start + 1),
    }
    if byte_range:
        headers["Content-Range"] = f"bytes {start}-{end}/{file.length}"

    stream = ConsumerStream(server.manager, session.info_hash, file)
    return StreamingResponse(
        stream.body(start, end),
        status_code=206 if byte_range else 200,
        media_type=mimetypes.guess_type(file.name)[0] or "application/octet-stream",
        headers=headers,
        background=BackgroundTask(stream.close),
    )
