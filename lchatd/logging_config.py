from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text == "WARN":
        text = "WARNING"
    named = logging.getLevelName(text)
    if isinstance(named, int):
        return named
    try:
        return int(text)
    except ValueError:
        return default


def _blank_to_none(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None


def _resolve_log_file(cfg: HubRuntimeConfig, override: str | None) -> str | None:
    # An explicit empty override disables file logging even if the config sets one.
    if override is not None:
        return _blank_to_none(override)
    return _blank_to_none(cfg.log_file)


def _file_handler(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def _replace_root_handlers(root: logging.Logger, handlers: list[logging.Handler]) -> None:
    for h in list(root.handlers):
        root.removeHandler(h)
        if isinstance(h, logging.FileHandler):
            h.close()
    for h in handlers:
        root.addHandler(h)


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Configure Python logging for lchatd.

    Safe to call more than once; previously installed root handlers are replaced.
    Moderation audit records are kept at INFO even when the hub runs quieter.
    """

    level = _parse_level(override_level or cfg.log_level, logging.INFO)

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    log_file = _resolve_log_file(cfg, override_file)
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=str(cfg.log_format).strip() or DEFAULT_FORMAT,
        datefmt=_blank_to_none(cfg.log_datefmt),
    )
    for h in handlers:
        h.setFormatter(formatter)

    root = logging.getLogger()
    _replace_root_handlers(root, handlers)
    root.setLevel(level)

    logging.getLogger("lchatd.audit").setLevel(min(level, logging.INFO))
    logging.getLogger("RNS").setLevel(_parse_level(cfg.log_rns_level, logging.WARNING))
    logging.getLogger("asyncio").setLevel(max(level, logging.WARNING))

    logging.captureWarnings(True)
