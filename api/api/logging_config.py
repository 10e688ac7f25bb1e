"""Process-wide logging setup with an explicit lifecycle.

Nothing is configured at import time.  :func:`configure_logging` is called
from the application lifespan and installs one handler on
the root logger; :func:`reset_logging` removes exactly that handler again
at shutdown, leaving handlers installed by anyone else untouched.
"""

from __future__ import annotations

import logging
import sys

from api.middleware.json_formatter import JSONFormatter

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_installed_handler: logging.Handler | None = None


def configure_logging(structured: bool = False, level: str | int = "INFO") -> logging.Handler:
    """Install the TravelPoint log handler on the root logger.

    Parameters
    ----------
    structured:
        Emit single-line JSON (:class:`JSONFormatter`) instead of text.
    level:
        Root log level name or number.

    Returns
    -------
    logging.Handler
        The installed handler.  Calling this again replaces it.
    """
    global _installed_handler  # noqa: PLW0603
    reset_logging()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else logging.Formatter(_TEXT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper() if isinstance(level, str) else level)
    _installed_handler = handler
    return handler


def reset_logging() -> None:
    """Remove the handler installed by :func:`configure_logging`, if any."""
    global _installed_handler  # noqa: PLW0603
    if _installed_handler is not None:
        logging.getLogger().removeHandler(_installed_handler)
        _installed_handler.close()
        _installed_handler = None
