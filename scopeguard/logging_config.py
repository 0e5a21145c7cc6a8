from __future__ import annotations

import logging

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_logging(level: str = "INFO", *, sql_echo: bool = False) -> None:
    """
    Set verbosity of the `scopeguard` package loggers.

    Notes:
    - The host application owns handlers and formatting; nothing is attached here.
    - `SCOPEGUARD_LOG_LEVEL=DEBUG` shows every allow/deny with its reason code.
    - Directory lookups run several small queries per decision, so SQLAlchemy's
      engine logger stays at WARNING unless `sql_echo` is set.
    """

    normalized = level.upper()
    if normalized not in _LEVELS:
        raise ValueError(f"Unknown log level {level!r}. Expected one of {', '.join(_LEVELS)}.")

    package_logger = logging.getLogger("scopeguard")
    package_logger.setLevel(normalized)
    package_logger.propagate = True

    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if sql_echo else logging.WARNING)
