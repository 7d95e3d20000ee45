"""Logging configuration for the application"""
import logging
from contextvars import ContextVar

from sadqa.core.config import settings

# Correlation id of the request being served ("-" outside a request)
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s'


class RequestIdFilter(logging.Filter):
    """Stamp records with the current request's correlation id"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()
        return True


def setup_logging():
    """Configure root logging with correlation ids and quiet HTTP client libraries"""
    level_name = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(RequestIdFilter())

    # Gateway and notifier calls go through httpx; its request lines are noise
    for noisy in ("httpx", "httpcore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
