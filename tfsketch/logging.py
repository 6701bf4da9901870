"""Logging utilities for tfsketch commands."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, MutableMapping

_LOGGER_NAME = "tfsketch"
_CONSOLE_FORMAT = "[tfsketch] %(levelname)s %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a module-scoped logger under the tfsketch hierarchy."""
    full_name = f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME
    return logging.getLogger(full_name)


class PhaseLogger(logging.LoggerAdapter):
    """Prefixes records with the pipeline phase and fixpoint iteration."""

    def __init__(self, logger: logging.Logger, phase: str, iteration: int | None = None) -> None:
        super().__init__(logger, {"phase": phase, "iteration": iteration})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        phase = extra.get("phase")
        iteration = extra.get("iteration")
        prefix = f"{phase}#{iteration}" if iteration is not None else f"{phase}"
        return f"[{prefix}] {msg}", kwargs


def phase_logger(name: str, phase: str, iteration: int | None = None) -> PhaseLogger:
    """Return a logger adapter tagged with `phase` (and `iteration` when looping)."""
    return PhaseLogger(get_logger(name), phase, iteration)


def configure_logging(
    *, verbose: bool = False, log_file: Path | None = None
) -> logging.Logger:
    """Configure the tfsketch logger with console output and optional file sink."""
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG if log_file is not None else level)
    logger.propagate = False

    # Repeated CLI invocations in one process must not stack handlers.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        sink = logging.FileHandler(log_file, encoding="utf-8")
        sink.setLevel(logging.DEBUG)
        sink.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(sink)

    return logger


__all__ = ["PhaseLogger", "configure_logging", "get_logger", "phase_logger"]
