import logging
import os
import sys
from typing import List, Optional, Union

ROOT_NAME = "autoservice"
FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
DATEFMT = "%Y-%m-%d %H:%M:%S"


def parse_level(value: Union[str, int, None]) -> int:
    """Map LOG_LEVEL values ('debug', 'WARN', 10, ...) to a logging level; INFO otherwise."""
    if isinstance(value, int):
        return value
    if not value:
        return logging.INFO
    name = value.strip().upper()
    if name == "WARN":
        name = "WARNING"
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _handlers(level: int, log_file: Optional[str]) -> List[logging.Handler]:
    formatter = logging.Formatter(fmt=FORMAT, datefmt=DATEFMT)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(os.path.expanduser(log_file), encoding="utf-8"))
        except OSError as exc:
            sys.stdout.write(f"LOG_FILE {log_file!r} could not be opened ({exc}); logging to stdout only\n")
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(formatter)
    return handlers


def get_logger(name: str) -> logging.Logger:
    """Logger for one area of the app, e.g. ``get_logger("ocr")`` -> ``autoservice.ocr``.

    Handlers are attached once to each area logger, honoring LOG_LEVEL
    (default INFO) and an optional LOG_FILE. Records do not propagate, so
    uvicorn/httpx root configuration never duplicates them.
    """
    logger = logging.getLogger(f"{ROOT_NAME}.{name}")
    if logger.handlers:
        return logger

    level = parse_level(os.environ.get("LOG_LEVEL"))
    logger.setLevel(level)
    for h in _handlers(level, os.environ.get("LOG_FILE")):
        logger.addHandler(h)
    logger.propagate = False
    return logger
