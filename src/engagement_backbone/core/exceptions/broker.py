"""
Broker-Related Exceptions

All exceptions related to the message broker connection (Redis-compatible
server used by the cache, rate limiter and job queues).

Author: Platform Engineering
Date: 2026-03-02
"""

from engagement_backbone.core.exceptions.base import BackboneError


class BrokerError(BackboneError):
    """Base exception for broker errors."""
    pass


class BrokerUnavailableError(BrokerError):
    """
    Raised when the broker cannot serve a command right now.

    Transient. Callers retry locally or degrade to their fallback.

    Common causes:
    - Connection reset, refused or timed out
    - Broken pipe while writing
    - Fail-over in progress (READONLY replica)
    """
    pass


class BrokerAuthenticationError(BrokerError):
    """Raised when the broker rejects credentials. Fatal."""
    pass


class BrokerScriptLimitError(BrokerError):
    """
    Raised when a server-side script batch is rejected.

    Bulk enqueue falls back to per-job enqueue with backoff.
    """
    pass
