from .logger import setup_logging, get_logger
from .utcnow import utcnow

__all__ = [
    "setup_logging",
    "get_logger",
    "utcnow",
]
