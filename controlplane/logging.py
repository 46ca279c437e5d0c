# Copyright 2022 Cisco Systems, Inc. and/or its affiliates.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Logging for the controlplane package, built on [loguru](https://loguru.readthedocs.io/).

Records are attributed to a component: an explicit `component` passed as extra, else the
object currently being reconciled (see `object_context`), else `controlplane`.
"""
from __future__ import annotations

import contextlib
import contextvars
import datetime
import functools
import inspect
import logging
import sys
import time
import traceback
from typing import Iterator, Optional

import loguru

__all__ = (
    "Mixin",
    "Filter",
    "Formatter",
    "InterceptHandler",
    "current_object",
    "logger",
    "log_execution_time",
    "object_context",
    "reset_to_defaults",
    "set_level",
)

logger = loguru.logger

_current_object_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "controlplane.logging.current_object", default=None
)


def current_object() -> Optional[str]:
    """Return a description of the object currently being operated on, if any."""
    return _current_object_var.get()


@contextlib.contextmanager
def object_context(description: str) -> Iterator[None]:
    """Attribute log records emitted within the block to the described object."""
    token = _current_object_var.set(description)
    try:
        yield
    finally:
        _current_object_var.reset(token)


class Mixin:
    """Exposes the package logger as `self.logger` on reconcilers and workloads."""

    @property
    def logger(self) -> loguru.Logger:
        return logger


class Filter:
    """Drops records below a level that can be changed at runtime.

    The sink the filter is attached to must accept every level (`level=0`).
    """

    def __init__(self, level: str = "INFO") -> None:
        self.level = level

    def __call__(self, record) -> bool:
        return record["level"].no >= logger.level(self.level).no


class InterceptHandler(logging.Handler):
    """Routes records of stdlib loggers, such as the Kubernetes client's, into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Attribute the record to the caller of the stdlib logger, not to the logging module
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{extra[component]}</magenta> - <level>{message}</level>"
    "{extra[traceback]}"
)


class Formatter:
    """Formats records with the component they are attributed to."""

    def __call__(self, record: dict) -> str:
        extra = record["extra"]
        extra["traceback"] = (
            "\n" + "".join(traceback.format_stack()) if extra.get("with_traceback") else ""
        )
        extra.setdefault("component", current_object() or "controlplane")
        return DEFAULT_FORMAT + "\n{exception}"


DEFAULT_FILTER = Filter("INFO")
DEFAULT_FORMATTER = Formatter()

DEFAULT_STDERR_HANDLER = {
    "sink": sys.stderr,
    "filter": DEFAULT_FILTER,
    "level": 0,
    "format": DEFAULT_FORMATTER,
    "backtrace": True,
    "diagnose": True,
}

# Libraries whose stdlib logging output is routed into loguru
INTERCEPTED_LOGGERS = ("kubernetes_asyncio", "asyncio")


def set_level(level: str) -> None:
    """Set the threshold of the default stderr handler."""
    DEFAULT_FILTER.level = level


def reset_to_defaults() -> None:
    """Restore the default stderr handler and the interception of client library logging."""
    DEFAULT_FILTER.level = "INFO"

    logger.remove()
    logger.configure(handlers=[DEFAULT_STDERR_HANDLER])

    for name in INTERCEPTED_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        if not any(isinstance(h, InterceptHandler) for h in stdlib_logger.handlers):
            stdlib_logger.addHandler(InterceptHandler())


def friendly_decorator(f):
    """Allow a decorator taking keyword options to be applied with or without parentheses."""

    @functools.wraps(f)
    def decorator(*args, **kwargs):
        if len(args) == 1 and not kwargs and callable(args[0]):
            return f(args[0])
        return lambda func: f(func, *args, **kwargs)

    return decorator


@friendly_decorator
def log_execution_time(func, *, level="DEBUG"):
    """Log how long the decorated function took once it returns or raises.

    Coroutine functions are timed across the await rather than until the coroutine is created.
    """

    def _log(start: float) -> None:
        duration = datetime.timedelta(seconds=time.monotonic() - start)
        logger.opt(depth=2).log(level, f"Function '{func.__name__}' executed in {duration}")

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapped(*args, **kwargs):
            start = time.monotonic()
            try:
                return await func(*args, **kwargs)
            finally:
                _log(start)

        return async_wrapped

    @functools.wraps(func)
    def wrapped(*args, **kwargs):
        start = time.monotonic()
        try:
            return func(*args, **kwargs)
        finally:
            _log(start)

    return wrapped


reset_to_defaults()
