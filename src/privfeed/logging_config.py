"""Logging setup for the privfeed command line."""

import logging
import os
import sys


LOG_LEVEL_ENV = "PRIVFEED_LOG_LEVEL"

# chatty at DEBUG and never about our own keys
_QUIET_LOGGERS = ("keyring",)


def configure_logging(verbose: bool = False) -> None:
    # stdout carries command output (decrypted posts, hex keys); logs go to stderr
    level = os.getenv(LOG_LEVEL_ENV, "").upper() or ("DEBUG" if verbose else "WARNING")
    if not isinstance(logging.getLevelName(level), int):
        level = "WARNING"
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
