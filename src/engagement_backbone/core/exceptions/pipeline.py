"""
Pipeline Exceptions

Domain errors raised by pipeline workers.

Author: Platform Engineering
Date: 2026-03-02
"""

from engagement_backbone.core.exceptions.queue import NonRetryableJobError


class UserNotFoundError(NonRetryableJobError):
    """Raised when a job references a user that does not exist."""
    pass


class UnknownCoinTypeError(NonRetryableJobError):
    """Raised when a coin recalculation job names an unknown coin type."""
    pass
