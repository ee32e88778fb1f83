"""Logging setup for the resim CLI.

Records use logfmt-style ``key=value`` messages under the ``resim`` logger and
go to stderr, so stdout stays clean for ``--github`` lines and JSON output.
Credentials never reach a handler: bearer tokens, client secrets and
passwords are masked by the formatter.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path
from typing import Callable

ROOT_LOGGER = "resim"
LEVEL_ENV = "RESIM_LOG_LEVEL"
FILE_ENV = "RESIM_LOG_FILE"

_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"
_HANDLER_ATTR = "_resim_role"

_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(r"((?:client_secret|client-secret|password|access_token)[=:]\s*)[^\s&,]+", re.I),
)


class RedactingFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        for pattern in _SECRET_PATTERNS:
            text = pattern.sub(r"\1***", text)
        return text


class _StderrHandler(logging.Handler):
    """Writes to whatever ``sys.stderr`` is at emit time."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            sys.stderr.write(self.format(record) + "\n")
        except Exception:
            self.handleError(record)


def level_from_env(default: int = logging.WARNING) -> int:
    name = os.environ.get(LEVEL_ENV, "").strip().upper()
    value = logging.getLevelName(name) if name else None
    return value if isinstance(value, int) else default


def _find(logger: logging.Logger, role: str) -> logging.Handler | None:
    return next((h for h in logger.handlers if getattr(h, _HANDLER_ATTR, None) == role), None)


def _replace(
    logger: logging.Logger, role: str, factory: Callable[[], logging.Handler] | None
) -> logging.Handler | None:
    current = _find(logger, role)
    if current is not None:
        logger.removeHandler(current)
        current.close()
    if factory is None:
        return None
    handler = factory()
    setattr(handler, _HANDLER_ATTR, role)
    handler.setFormatter(RedactingFormatter(_FORMAT))
    logger.addHandler(handler)
    return handler


def setup_logging(*, level: int | None = None) -> None:
    """Configure the ``resim`` logger; safe to call more than once.

    *level* wins over ``RESIM_LOG_LEVEL`` (``--verbose`` passes INFO). When
    ``RESIM_LOG_FILE`` names a path, command lifecycle records at INFO and
    above are appended there regardless of the stderr level.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    stderr_level = level if level is not None else level_from_env()

    stderr = _find(logger, "stderr") or _replace(logger, "stderr", _StderrHandler)
    stderr.setLevel(stderr_level)

    raw_path = os.environ.get(FILE_ENV, "").strip()
    effective = stderr_level
    if raw_path:
        path = Path(raw_path).expanduser().resolve()
        existing = _find(logger, "file")
        if not isinstance(existing, logging.FileHandler) or Path(existing.baseFilename) != path:
            path.parent.mkdir(parents=True, exist_ok=True)
            existing = _replace(
                logger, "file", lambda: logging.FileHandler(path, encoding="utf-8")
            )
        file_level = min(stderr_level, logging.INFO)
        existing.setLevel(file_level)
        effective = min(effective, file_level)
    else:
        _replace(logger, "file", None)

    logger.setLevel(effective)
