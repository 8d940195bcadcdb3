import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Callable

import structlog
from fastapi import Request, Response
from prometheus_client import Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from structlog.contextvars import bind_contextvars, clear_contextvars

from torrent_stream import instrumentation

log = structlog.get_logger(__name__)
request_id = ContextVar("request_id", default="MISSING")

REQUEST_DURATION = Histogram(
    name="request_duration_seconds",
    documentation="Time to first byte of HTTP responses in seconds",
    labelnames=["method", "request_handler", "status"],
    registry=instrumentation.registry(),
)


def get_route_handler(request: Request) -> str | None:
    route = request.scope.get("route")
    return getattr(route, "name", None)


class Metrics(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        start_time = datetime.now()
        resp: Response = await call_next(request)
        # streamed bodies are still being sent, this measures the headers
        request_time = datetime.now() - start_time
        handler = get_route_handler(request)
        if handler:
            REQUEST_DURATION.labels(
                request.method, handler, f"{str(resp.status_code)[0]}xx"
            ).observe(request_time.total_seconds())
        return resp


class RequestContext(BaseHTTPMiddleware):
    """
    Binds a request id for every log line of the request and logs the
    response. For streams the response is logged once headers are sent, the
    body is still flowing.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        clear_contextvars()
        rid: str = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request_id.set(rid)
        bind_contextvars(request_id=rid)

        ll = log.bind(
            method=request.method,
            path=request.url.path,
            range=request.headers.get("Range"),
            remote=request.client.host if request.client else None,
        )
        start_time: datetime = datetime.now()
        ll.debug("http_request")
        response: Response = await call_next(request)
        process_time = f"{(datetime.now() - start_time).total_seconds():.3f}s"
        response.headers["X-Process-Time"] = process_time
        response.headers["X-Request-ID"] = rid
        ll.info("http_response", duration=process_time, status=response.status_code)
        return response
