"""Logging configuration for fleetward.

Structured logging via loguru. The library logger is disabled by default
and enabled by ``setup_logging`` (or by ``FleetManager(logging=...)``).

Example:
    from fleetward import FleetManager, LogConfig

    with FleetManager(gateway, deployer, logging=LogConfig(level="DEBUG", file="fleet.log")) as fleet:
        fleet.add_node(config).result()
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Literal

from loguru import logger

logger.disable("fleetward")

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level.
        file: Path to log file. If provided, logs are written to this file.
        console: Whether to log to stderr. Defaults to True.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Enable fleetward logging and return handler IDs for cleanup."""
    logger.enable("fleetward")
    logger.configure(extra={"component": "fleetward"})
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="fleetward",
        ))

    if config.file:
        handler_ids.append(logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,  # tracebacks may carry private keys
            enqueue=True,
            filter="fleetward",
        ))

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("fleetward")
