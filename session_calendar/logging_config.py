from __future__ import annotations

import logging
import sys


def configure_logging(level: int = logging.INFO) -> None:
    """Configure basic structured logging for the scheduling service.

    Logs go to stdout through a single formatter carrying level and logger
    name. Calendar modules log snake_case event names and attach context
    through ``extra`` so the shipping agent can index it.
    """
    root = logging.getLogger()
    if root.handlers:
        # Assume logging already configured.
        return

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(level)
    # googleapiclient logs every discovery/cache miss at INFO.
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
