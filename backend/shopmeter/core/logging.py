"""Logging setup.

Services log to a handful of named channels rather than module paths so the
billing trail can be filtered in one place:

    billing        subscription, payment and promotion changes
    usage          usage reports and bucket deductions
    notifications  notification records and emails
    transactions   retries and failures of serializable transactions
"""
import logging

from shopmeter.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DOMAIN_CHANNELS = ("billing", "usage", "notifications", "transactions")
QUIET_LIBRARIES = ("urllib3", "httpx", "sqlalchemy.engine", "opentelemetry")


def setup_logging(level: str = None):
    """Configure the root logger and the domain channels"""
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, datefmt=DATE_FORMAT, force=True)

    for channel in DOMAIN_CHANNELS:
        logging.getLogger(channel).setLevel(numeric_level)

    for library in QUIET_LIBRARIES:
        logging.getLogger(library).setLevel(logging.WARNING)

    return numeric_level
