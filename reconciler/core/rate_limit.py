"""Per-IP rate limiting (SlowAPI). request.client is already resolved by the trusted-proxy middleware."""
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings

limiter = Limiter(key_func=get_remote_address)


def webhook_rate_limit() -> str:
    return f"{settings.rate_limit_per_minute}/minute"
