"""Logging setup for Lofi Deck.

Every module logs under the "lofi_deck" namespace, so one call to
``setup_logging`` controls the controller, the audio graph and the plugins.
Areas that get chatty at DEBUG (the audio engine runs once per block, the
render loop once per frame) can be given their own level through
``logging.levels`` in the settings file::

    logging:
      level: DEBUG
      levels:
        audio.engine: WARNING
        deck.render_loop: INFO
"""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Optional, Set

if TYPE_CHECKING:
    from lofi_deck.services.shared.config import Config

_ROOT = "lofi_deck"
_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Child loggers given an explicit level by the last setup_logging() call
_tuned: Set[str] = set()


def _level_number(level: str) -> int:
    upper = str(level).upper()
    if upper not in _VALID_LEVELS:
        raise ValueError(f"Invalid log level: {level!r}. Must be one of {_VALID_LEVELS}")
    return getattr(logging, upper)


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the lofi_deck namespace.

    ``get_logger("deck.controller")`` → ``lofi_deck.deck.controller``; names
    that already start with "lofi_deck" are used unchanged.
    """
    if name == _ROOT or name.startswith(_ROOT + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT}.{name}")


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
    levels: Optional[Mapping[str, str]] = None,
) -> None:
    """Configure the lofi_deck root logger.

    Args:
        level: "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL".
        log_file: Optional path to a rotating log file.
        max_bytes: Size at which the log file rotates (default 10 MB).
        backup_count: Rotated files to keep.
        levels: Per-area overrides, e.g. ``{"audio.engine": "WARNING"}``.
            Areas tuned by an earlier call and absent here fall back to
            ``level``.

    Raises:
        ValueError: If level, or any level in ``levels``, is not a valid
            log level string.
    """
    numeric = _level_number(level)
    overrides = {get_logger(area).name: _level_number(lvl) for area, lvl in (levels or {}).items()}
    fmt = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger(_ROOT)
    root.setLevel(numeric)
    # Repeated calls (app reloads, tests) must not stack handlers
    root.handlers.clear()

    # Handlers pass everything; loggers decide, so an area can run below the root level
    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)

    root.propagate = False

    for name in _tuned - set(overrides):
        logging.getLogger(name).setLevel(logging.NOTSET)
    for name, value in overrides.items():
        logging.getLogger(name).setLevel(value)
    _tuned.clear()
    _tuned.update(overrides)


def setup_logging_from_config(config: "Config") -> None:
    """Apply the ``logging.*`` section of the settings file."""
    setup_logging(
        level=str(config.get("logging.level", "INFO")),
        log_file=config.get("logging.file"),
        max_bytes=int(config.get("logging.max_bytes", 10 * 1024 * 1024)),
        backup_count=int(config.get("logging.backup_count", 3)),
        levels=config.get("logging.levels") or {},
    )
