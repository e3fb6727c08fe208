"""
Configuration settings for the payment reconciliation worker
"""

import os
import logging
from decimal import Decimal
from typing import List

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

logger = logging.getLogger(__name__)


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes", "on")


class Config:
    """Application configuration"""

    # Environment Detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
    IS_PRODUCTION = ENVIRONMENT == "production"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database Configuration
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))
    DATABASE_ECHO = _get_bool("DATABASE_ECHO")

    # Redis Configuration
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_ENABLED = _get_bool("REDIS_ENABLED", "true")
    REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))

    # NOWPayments gateway
    NOWPAYMENTS_API_KEY = os.getenv("NOWPAYMENTS_API_KEY", "")
    NOWPAYMENTS_BASE_URL = os.getenv(
        "NOWPAYMENTS_BASE_URL", "https://api.nowpayments.io/v1"
    ).rstrip("/")
    NOWPAYMENTS_SANDBOX_MODE = _get_bool("NOWPAYMENTS_SANDBOX_MODE")
    NOWPAYMENTS_REQUEST_TIMEOUT = int(os.getenv("NOWPAYMENTS_REQUEST_TIMEOUT", "30"))
    # NOWPayments payment ids are purely numeric
    NOWPAYMENTS_PAYMENT_ID_PATTERN = os.getenv("NOWPAYMENTS_PAYMENT_ID_PATTERN", r"^\d+$")

    # Status poller
    PAYMENT_MONITORING_INTERVAL = int(os.getenv("PAYMENT_MONITORING_INTERVAL", "30"))  # seconds
    PAYMENT_MONITORING_BATCH_SIZE = int(os.getenv("PAYMENT_MONITORING_BATCH_SIZE", "50"))
    PAYMENT_RETRY_ATTEMPTS = int(os.getenv("PAYMENT_RETRY_ATTEMPTS", "3"))
    PAYMENT_RETRY_DELAY = float(os.getenv("PAYMENT_RETRY_DELAY", "5"))  # seconds, doubled per attempt
    PAYMENT_MONITORING_WINDOW_DAYS = int(os.getenv("PAYMENT_MONITORING_WINDOW_DAYS", "7"))
    PENDING_QUEUE_CACHE_KEY = "payment_monitoring:pending_payments"
    PENDING_QUEUE_TTL = int(os.getenv("PENDING_QUEUE_TTL", "3600"))

    # Credit allocation
    CREDIT_ALLOCATION_RATE = Decimal(os.getenv("CREDIT_ALLOCATION_RATE", "1.0"))
    MAX_CREDIT_ALLOCATION = Decimal(os.getenv("MAX_CREDIT_ALLOCATION", "10000"))
    FULL_PAYMENT_EPSILON = Decimal(os.getenv("FULL_PAYMENT_EPSILON", "0.000001"))
    DUPLICATE_ALLOCATION_TTL = int(os.getenv("DUPLICATE_ALLOCATION_TTL", "86400"))
    ALLOCATION_NOTIFICATION_TTL = int(os.getenv("ALLOCATION_NOTIFICATION_TTL", "3600"))
    ALLOCATION_RECONCILE_INTERVAL = int(os.getenv("ALLOCATION_RECONCILE_INTERVAL", "300"))

    # Failure tracking
    PAYMENT_FAILURE_TTL = int(os.getenv("PAYMENT_FAILURE_TTL", "604800"))

    @classmethod
    def validate(cls) -> List[str]:
        """Validate required settings, returning a list of problems"""
        problems = []
        if not cls.DATABASE_URL:
            problems.append("DATABASE_URL is not set")
        if not cls.NOWPAYMENTS_API_KEY:
            problems.append("NOWPAYMENTS_API_KEY is not set - gateway polling disabled")
        if cls.PAYMENT_MONITORING_BATCH_SIZE < 1:
            problems.append("PAYMENT_MONITORING_BATCH_SIZE must be at least 1")
        if cls.CREDIT_ALLOCATION_RATE <= 0:
            problems.append("CREDIT_ALLOCATION_RATE must be positive")

        for problem in problems:
            logger.warning(f"⚠️ CONFIG: {problem}")
        return problems
