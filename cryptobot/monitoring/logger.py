"""Logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

_NOISY_LOGGERS = ('ccxt', 'aiohttp.access', 'sqlalchemy.engine', 'httpx', 'openai')


def configure_logging(
    level: str = 'INFO',
    *,
    include_timestamp: bool = True,
    log_file: Optional[Path] = None,
) -> None:
    """Configure root logging handlers.

    Third-party libraries are held at WARNING unless the root level is DEBUG.
    """
    fmt = '%(asctime)s - %(name)s - %(levelname)s - %(message)s' if include_timestamp else '%(name)s - %(levelname)s - %(message)s'
    resolved = getattr(logging, level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(level=resolved, format=fmt, handlers=handlers, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(resolved if resolved <= logging.DEBUG else logging.WARNING)


__all__ = ['configure_logging']
