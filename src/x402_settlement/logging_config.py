"""Logging setup for the facilitator process."""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """
    Send ``x402_settlement`` logs to stderr at ``level``.

    Safe to call more than once; the handler is installed only the first time.
    """
    root = logging.getLogger("x402_settlement")
    root.setLevel(level.upper())
    if not any(getattr(h, "_x402_handler", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._x402_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
