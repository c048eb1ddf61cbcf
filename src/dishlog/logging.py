import logging
import os
import sys
from typing import List, Optional, Union

ROOT_LOGGER = "dishlog"
FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
DATEFMT = "%Y-%m-%d %H:%M:%S"

_HTTP_LOGGERS = ("httpx", "httpcore")


def parse_level(value: Union[str, int, None], default: int = logging.INFO) -> int:
    """Map 'debug', 'WARN', 20, ... to a logging level; unknown names give ``default``."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        name = value.strip().upper()
        if name == "WARN":
            name = "WARNING"
        level = logging.getLevelName(name)
        if isinstance(level, int):
            return level
    return default


def _build_handlers() -> List[logging.Handler]:
    # Handlers carry no level of their own; loggers decide what gets through.
    formatter = logging.Formatter(fmt=FORMAT, datefmt=DATEFMT)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_file = os.environ.get("LOG_FILE")
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as exc:
            sys.stderr.write(f"LOG_FILE {log_file!r} could not be opened ({exc}); logging to stderr only\n")
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def _root() -> logging.Logger:
    """The ``dishlog`` logger, configured once per process.

    Every module logger is a child of it and propagates into its handlers;
    nothing goes further up to the interpreter's root logger.
    """
    root = logging.getLogger(ROOT_LOGGER)
    if getattr(root, "_dishlog_handlers", None) is None:
        handlers = _build_handlers()
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(parse_level(os.environ.get("LOG_LEVEL")))
        root.propagate = False
        setattr(root, "_dishlog_handlers", handlers)
    return root


def get_logger(name: str, level: Union[str, int, None] = None) -> logging.Logger:
    """Return ``dishlog.<name>``.

    - Level comes from LOG_LEVEL (default INFO) unless ``level`` overrides it
      for this logger only.
    - LOG_FILE (optional path) adds an appending file handler.
    """
    _root()
    logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")
    if level is not None:
        logger.setLevel(parse_level(level))
    return logger


def enable_http_debug() -> None:
    """Send httpx/httpcore wire logging at DEBUG through the dishlog handlers."""
    handlers = getattr(_root(), "_dishlog_handlers")
    for name in _HTTP_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(logging.DEBUG)
        for handler in handlers:
            if handler not in logger.handlers:
                logger.addHandler(handler)
        logger.propagate = False
