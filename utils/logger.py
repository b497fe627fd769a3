import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import List, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"

_configured = False


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configures the root logger for the gateway.
    Safe to call more than once; only the first call installs handlers.
    """
    global _configured
    if _configured:
        return

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(
            RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
        )

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers)

    # Silence noisy libraries
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("motor").setLevel(logging.WARNING)
    logging.getLogger("multipart").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
