"""
Exception Module

Structured exception hierarchy for the engagement backbone, organized by theme.

Module Structure:
-----------------
- **base.py**: BackboneError base class + ConfigurationError
- **broker.py**: Broker connection exceptions
- **queue.py**: Job queue and worker exceptions
- **database.py**: Relational store exceptions + classify_db_error
- **external.py**: External catalog API exceptions
- **pipeline.py**: Pipeline domain exceptions

Usage:
------
```python
from engagement_backbone.core.exceptions import BrokerUnavailableError, DuplicateJobError
```
"""

from engagement_backbone.core.exceptions.base import BackboneError, ConfigurationError
from engagement_backbone.core.exceptions.broker import (
    BrokerAuthenticationError,
    BrokerError,
    BrokerScriptLimitError,
    BrokerUnavailableError,
)
from engagement_backbone.core.exceptions.database import (
    DatabaseError,
    DbFatalError,
    DbTransientError,
    classify_db_error,
)
from engagement_backbone.core.exceptions.external import (
    ExternalApi4xxError,
    ExternalApi5xxError,
    ExternalApiError,
)
from engagement_backbone.core.exceptions.pipeline import UnknownCoinTypeError, UserNotFoundError
from engagement_backbone.core.exceptions.queue import (
    DuplicateJobError,
    ImportInProgressError,
    JobLockLostError,
    JobNotFoundError,
    NonRetryableJobError,
    QueueError,
    WorkerInitializationError,
    WorkerStalledError,
)

__all__ = [
    # Base
    "BackboneError",
    "ConfigurationError",
    # Broker
    "BrokerError",
    "BrokerUnavailableError",
    "BrokerAuthenticationError",
    "BrokerScriptLimitError",
    # Queue
    "QueueError",
    "DuplicateJobError",
    "JobNotFoundError",
    "JobLockLostError",
    "WorkerStalledError",
    "WorkerInitializationError",
    "NonRetryableJobError",
    "ImportInProgressError",
    # Database
    "DatabaseError",
    "DbTransientError",
    "DbFatalError",
    "classify_db_error",
    # External API
    "ExternalApiError",
    "ExternalApi4xxError",
    "ExternalApi5xxError",
    # Pipelines
    "UserNotFoundError",
    "UnknownCoinTypeError",
]
