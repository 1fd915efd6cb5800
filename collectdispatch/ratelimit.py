from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings

# Counters live in RATE_LIMIT_STORAGE_URI; point it at redis when running more than one instance
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit],
    storage_uri=settings.rate_limit_storage_uri,
    enabled=settings.rate_limit_enabled,
)
