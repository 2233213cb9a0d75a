# calsync/utils/my_logging.py
"""Logging configuration"""
import logging
import re
import sys
from calsync.config.settings import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"

# Google access/refresh tokens and query-string secrets (OAuth code, state, tokens)
SECRET_PATTERNS = (
    re.compile(r"(ya29\.)[\w\-.]+"),
    re.compile(r"(1//)[\w\-.]+"),
    re.compile(r"((?:access_token|refresh_token|code|state|token)=)[^&\s]+"),
)


class RedactSecretsFilter(logging.Filter):
    """Masks provider credentials that end up inside exception text"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in SECRET_PATTERNS:
            redacted = pattern.sub(r"\1[REDACTED]", redacted)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


class CorrelationIdFilter(logging.Filter):
    """Records logged outside a request get a placeholder id"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


def setup_logging(verbose=True):
    """Configure application logging"""
    settings = get_settings()

    if verbose:
        level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    else:
        level = logging.WARNING

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    handler.addFilter(RedactSecretsFilter())

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[handler]
    )

    # Discovery cache warnings are emitted on every googleapiclient build()
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)

    if not verbose:
        for name in ("sqlalchemy", "alembic", "urllib3", "httpx", "googleapiclient", "uvicorn"):
            logger = logging.getLogger(name)
            logger.setLevel(logging.ERROR)
            logger.propagate = False
