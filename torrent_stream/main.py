from contextlib import asynccontextmanager
from typing import Any, Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import Response

from torrent_stream import config, instrumentation, logging, middleware, routes
from torrent_stream.config import Settings
from torrent_stream.server import TorrentServer

logging.init()
instrumentation.init(config.BUILD_VERSION)

log = structlog.get_logger(__name__)


def libtorrent_server(settings: Settings) -> TorrentServer:
    # imported here so the app can be built around another engine
    from torrent_stream.engine.libtorrent_engine import LibtorrentEngine

    stream_engine = LibtorrentEngine(
        download_limit=settings.download_speed_limit,
        upload_limit=settings.upload_speed_limit,
        max_connections=settings.max_conns_per_torrent,
    )
    info_engine = LibtorrentEngine(listen_interfaces="0.0.0.0:6891,[::]:6891")
    return TorrentServer(settings, stream_engine, info_engine)


def create_app(server_factory: Callable[[Settings], TorrentServer] = libtorrent_server) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        server = server_factory(config.load())
        app.state.server = server
        log.info("starting torrent server", version=config.VERSION)
        await server.start()
        yield
        log.info("shutting down")
        await server.stop()
        instrumentation.shutdown()

    app = FastAPI(title=config.APP_NAME, version=config.VERSION, lifespan=lifespan)

    # XXX These are executed in reverse order
    app.add_middleware(middleware.Metrics)
    app.add_middleware(middleware.RequestContext)

    app.add_route("/metrics", instrumentation.metrics_handler)

    @app.options("/{rest_of_path:path}")
    async def preflight_handler() -> Response:
        return Response(
            status_code=200,
            headers={
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Methods": "GET, OPTIONS",
                "Access-Control-Allow-Headers": "Range, Content-Type",
            },
        )

    @app.middleware("http")
    async def add_CORS_header(request: Request, call_next: Any):
        response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Expose-Headers"] = "Content-Range, Content-Length"
        return response

    app.include_router(routes.router)
    return app


app = create_app()
