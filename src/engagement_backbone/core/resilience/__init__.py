from .retry import is_db_transient, is_retryable, is_transient_error, retry_async

__all__ = ["is_db_transient", "is_retryable", "is_transient_error", "retry_async"]
