"""
Logging helpers shared by the API, the CLI and the RBAC core.

Every module obtains its logger through get_logger(__name__). The audit
trail helpers log to the dedicated 'rbac.audit' logger so that operators can
route security events separately from application noise.
"""

import logging
import sys
from typing import Optional

LOG_FORMAT = "(%(asctime)s) [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# verbosity 0-4, mirrors the CLI --verbosity flag
VERBOSITY_LEVELS = {
    0: logging.CRITICAL,
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
    4: logging.DEBUG,
}

_ROOT_NAME = "lms"
_configured = False


def _level_for(verbosity: int) -> int:
    verbosity = max(0, min(4, int(verbosity)))
    return VERBOSITY_LEVELS[verbosity]


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger namespaced under the application root logger.

    Args:
        name: Module name (usually __name__). 'src.' prefixes are stripped.

    Returns:
        logging.Logger
    """
    if not name:
        return logging.getLogger(_ROOT_NAME)
    if name.startswith("src."):
        name = name[len("src."):]
    return logging.getLogger(f"{_ROOT_NAME}.{name}")


def setup_logging(verbosity: int = 3, stream=None) -> None:
    """
    Configure the application root logger once.

    Args:
        verbosity: 0 (critical only) to 4 (debug)
        stream: Output stream, defaults to stderr
    """
    global _configured

    root = logging.getLogger(_ROOT_NAME)
    root.setLevel(_level_for(verbosity))

    if _configured:
        return

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)
    root.propagate = False
    _configured = True


def setup_cli_logging(verbosity: int = 3) -> None:
    """CLI entry points log to stdout."""
    setup_logging(verbosity=verbosity, stream=sys.stdout)
