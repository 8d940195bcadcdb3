import os

import structlog
from fastapi import Request
from fastapi.responses import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    multiprocess,
)

log = structlog.get_logger()

single_proc_registry = CollectorRegistry()


def registry() -> CollectorRegistry:
    if "PROMETHEUS_MULTIPROC_DIR" in os.environ:
        reg = CollectorRegistry()
        multiprocess.MultiProcessCollector(reg)
        return reg

    return single_proc_registry


BUILD_INFO = Gauge(
    name="build_info",
    documentation="build information",
    multiprocess_mode="livemin",
    labelnames=["version"],
    registry=registry(),
)

HTTP_CLIENT_REQUEST_DURATION = Histogram(
    name="http_client_request_duration_seconds",
    documentation="Duration of outgoing HTTP requests in seconds",
    labelnames=["client", "method", "url", "status_code", "error"],
    registry=registry(),
)

METADATA_REQUESTS = Counter(
    name="metadata_requests",
    documentation="Metadata acquisitions by outcome",
    labelnames=["result"],
    registry=registry(),
)

TEARDOWNS = Counter(
    name="torrent_teardowns",
    documentation="Sessions removed after their grace period",
    registry=registry(),
)

OPEN_STREAMS = Gauge(
    name="open_streams",
    documentation="Consumer streams currently open",
    multiprocess_mode="livesum",
    registry=registry(),
)

ACTIVE_TORRENTS = Gauge(
    name="active_torrents",
    documentation="Sessions live in the streaming engine",
    multiprocess_mode="livesum",
    registry=registry(),
)


async def metrics_handler(_: Request):
    data = generate_latest(registry())
    return Response(
        content=data,
        headers={
            "Content-Type": CONTENT_TYPE_LATEST,
            "Content-Length": str(len(data)),
        },
    )


def init(version: str):
    BUILD_INFO.labels(version=version).set(1)


def shutdown():
    if "PROMETHEUS_MULTIPROC_DIR" not in os.environ:
        return
    log.info("shutdown prometheus multiprocess_mode")
    multiprocess.mark_process_dead(os.getpid())  # type: ignore
