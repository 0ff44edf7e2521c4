"""
Rate Limiting Module

Provides distributed rate limiting with a broker backend.
"""

from .rate_limiter import RateLimitManager, SlidingWindowRateLimiter, get_rate_limit_manager, setup_rate_limiting

__all__ = [
    "RateLimitManager",
    "SlidingWindowRateLimiter",
    "get_rate_limit_manager",
    "setup_rate_limiting",
]
