"""Process-wide logging setup.

Called once by the server and CLI entry points. Library modules only create
module loggers (`logging.getLogger(__name__)`) and never configure handlers.
"""

import logging
import sys

from chatrelay.llm.provider_config import DEBUG, LOG_LEVEL


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Per-request transport chatter from HTTP client libraries.
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3")


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Install a single stream handler on the root logger.

    Repeated calls replace the handler instead of stacking new ones.
    """
    resolved = logging.DEBUG if DEBUG else getattr(logging, str(level).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(resolved)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
