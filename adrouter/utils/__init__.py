"""Utilities package - datetime and rate limiting helpers."""
from adrouter.utils.datetime_utils import utcnow, day_bounds_utc, today_bounds_utc, local_today, to_naive_utc
from adrouter.utils.rate_limit import RateLimiter, RateRule, RATE_RULES

__all__ = [
    "utcnow",
    "day_bounds_utc",
    "today_bounds_utc",
    "local_today",
    "to_naive_utc",
    "RateLimiter",
    "RateRule",
    "RATE_RULES",
]
