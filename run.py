import uvicorn

from torrent_stream import config, instrumentation
from torrent_stream.logging import init as init_logging

instrumentation.init(config.BUILD_VERSION)
init_logging()


if __name__ == "__main__":
    # one worker: stream counts and teardown timers live in this process
    uvicorn.run(
        "torrent_stream.main:app",
        host=config.HOST,
        port=config.PORT,
        reload=False,
        workers=1,
        loop="uvloop",
        log_level="error",
    )
