"""Logging setup shared by the CLI and the web server."""

import logging
import sys

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO, format: str | None = None) -> None:
    """Configure the root logger once; existing handlers are left alone."""
    if logging.getLogger().handlers:
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
