"""
Logging configuration for archoverlay.

Library modules only create loggers; handlers are attached here, by the CLI.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("archoverlay").setLevel(logging.DEBUG)


def configure_ops_log(store_path):
    """Configure a persistent operations log for an overlay store directory.

    Writes to {store_path}/archoverlay-ops.log using a rotating file handler
    (1MB max, 3 backups). Returns the handler so it can be removed on close.
    """
    log_path = Path(store_path) / "archoverlay-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    overlay_logger = logging.getLogger("archoverlay")
    overlay_logger.addHandler(handler)
    # Ensure INFO gets through even when the root logger is quieter
    if overlay_logger.level == logging.NOTSET or overlay_logger.level > logging.INFO:
        overlay_logger.setLevel(logging.INFO)

    return handler
