"""
External API Exceptions

Errors raised by the external customer catalog client.

Author: Platform Engineering
Date: 2026-03-02
"""

from engagement_backbone.core.exceptions.base import BackboneError


class ExternalApiError(BackboneError):
    """Base exception for external API errors."""
    pass


class ExternalApi4xxError(ExternalApiError):
    """Client-side rejection (4xx). Non-retryable."""
    pass


class ExternalApi5xxError(ExternalApiError):
    """Server-side failure (5xx) or timeout. Retryable by queue backoff."""
    pass
