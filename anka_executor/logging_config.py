import logging
import sys
from typing import TextIO


PACKAGE_LOGGER = "anka_executor"

BOLD_RED = "\033[31;1m"
BOLD_YELLOW = "\033[33;1m"
BOLD_MAGENTA = "\033[35;1m"
RESET = "\033[0;m"


class OperatorFormatter(logging.Formatter):
    """Formats records for the GitLab job log.

    Warnings and errors are colored, and records logged with
    ``extra={"highlight": True}`` stand out in magenta.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if record.levelno >= logging.ERROR:
            return f"{BOLD_RED}ERROR: {message}{RESET}"
        if record.levelno >= logging.WARNING:
            return f"{BOLD_YELLOW}WARN: {message}{RESET}"
        if record.levelno <= logging.DEBUG:
            return f"DEBUG: {message}"
        if getattr(record, "highlight", False):
            return f"{BOLD_MAGENTA}{message}{RESET}"
        return message


def configure_logging(
    debug: bool = False, stream: TextIO | None = None
) -> logging.Logger:
    log = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(log.handlers):
        log.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        OperatorFormatter("%(asctime)s %(message)s", datefmt="%Y/%m/%d %H:%M:%S")
    )
    log.addHandler(handler)
    log.setLevel(logging.DEBUG if debug else logging.INFO)
    return log
