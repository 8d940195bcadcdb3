import inspect
import logging
import os
from datetime import datetime
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def add_code_info(logger: logging.Logger, method_name: str, event_dict: Any) -> dict[str, Any]:
    frame = inspect.currentframe()
    # skip structlog's frames and our own
    while frame and ("structlog" in frame.f_code.co_filename or frame.f_code.co_filename == __file__):
        frame = frame.f_back
    if frame is None:
        return event_dict
    event_dict["code_func"] = frame.f_code.co_name
    event_dict["code_line"] = frame.f_lineno
    return event_dict


structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_code_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.EventRenamer(to="msg"),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)


def init():
    logging.basicConfig(format="%(message)s", level=LOG_LEVEL)


R = TypeVar("R")


def timestamped(log_args: list[str] = []):
    """
    Log how long a coroutine took, along with the keyword arguments named in
    log_args.
    """

    def decorator(func: Callable[..., Awaitable[R]]) -> Callable[..., Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> R:
            start_time = datetime.now()
            try:
                return await func(*args, **kwargs)
            finally:
                structlog.get_logger(func.__module__).info(
                    "execution_time",
                    function=func.__qualname__,
                    duration=f"{(datetime.now() - start_time).total_seconds():.4f}s",
                    **{arg: kwargs[arg] for arg in log_args if arg in kwargs},
                )

        return wrapper

    return decorator
