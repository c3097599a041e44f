"""Log sink setup for the command line."""

import sys

from loguru import logger

DEFAULT_LOG_LEVEL = "WARNING"
LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function} - {message}"


def configure_logging(level: str | None = None) -> None:
    """Replace loguru's default sink with a stderr sink at ``level``.

    Progress meant for the user goes through ``typer.echo``; log records stay
    on stderr and are quiet unless the level is lowered.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or DEFAULT_LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        backtrace=False,
        diagnose=False,
    )
