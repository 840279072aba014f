# app/limiter.py
# Holds the rate limiter instance so main.py and the routers can share it without circular imports.

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[get_settings().rate_limit_default],
    enabled=get_settings().rate_limit_enabled,
)

BOOKING_RATE = "30/minute"
LOGIN_RATE = "10/minute"
