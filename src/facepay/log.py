"""
Logging - console output for applications embedding the SDK.

Library modules only create loggers; the host application (or an example
script) calls configure_logging() once at startup, usually with
Settings.log_level.
"""

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level="INFO") -> None:
    """Log to stderr at `level` (a name or number) unless logging is already set up."""
    root = logging.getLogger()
    if root.handlers:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    root.addHandler(handler)
    root.setLevel(level)

    # urllib3 logs every pooled connection at DEBUG
    logging.getLogger("urllib3").setLevel(max(root.level, logging.INFO))
