from .logger import setup_logging, get_logger
from .retry import RetryConfig, RetryableClient
from .utcnow import utcnow, utc_date_key, to_utc_naive

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",

    # Retry
    "RetryConfig",
    "RetryableClient",

    # Time
    "utcnow",
    "utc_date_key",
    "to_utc_naive",
]
