"""Logging configuration for Quill.

Configures the root logger to output to the terminal (stdout). Only the CLI
and the API app call this; importing the engine never touches logging setup.
"""

import logging
import os
import sys


def setup_logging(verbose: bool = False, stream=None) -> None:
    """Configure the root logger to output to the terminal.

    Args:
        verbose: If True, sets log level to DEBUG, which also surfaces
            unresolved references during evaluation
        stream: Where to write; defaults to stdout
    """
    logger = logging.getLogger()

    env_verbose = os.getenv("QUILL_VERBOSE", "").lower() in ("1", "true", "yes")
    log_level = logging.DEBUG if (verbose or env_verbose) else logging.INFO
    logger.setLevel(log_level)

    # Avoid duplicate handlers when called twice (tests, reloads)
    if logger.hasHandlers():
        logger.handlers.clear()

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(console_handler)

    if log_level == logging.DEBUG:
        logging.debug("Logging initialized with VERBOSE mode (DEBUG level).")
