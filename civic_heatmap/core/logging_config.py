"""Logging setup shared by the CLI and anything embedding the client."""

import logging

from civic_heatmap.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def configure_logging(debug: bool | None = None) -> None:
    """Apply the standard format; DEBUG level when settings.debug is on."""
    if debug is None:
        debug = settings.debug
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )
    # httpx logs every request at INFO, too chatty for a polling client
    logging.getLogger("httpx").setLevel(logging.WARNING)
