"""Logging setup shared by the relay process and the approver subprocess."""

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Send all log records to stderr.

    stderr is used even in the relay process so that the approver, which
    shares this setup, never writes logs onto its MCP stdout channel.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
    """
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        print(f"Warning: invalid log level {level!r}, defaulting to INFO", file=sys.stderr)
        resolved = logging.INFO

    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("claude_relay").setLevel(resolved)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
