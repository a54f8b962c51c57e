"""
Custom exceptions for the download pipeline with structured error context.

Every exception carries a context dictionary naming the package, queue
message or query involved.

Exception Hierarchy:
    PipelineException (base)
    ├── RegistryError
    │   ├── RegistryUnavailableError (retryable)
    │   ├── RateLimitError (retryable)
    │   └── RegistryResponseError
    ├── StoreError
    │   ├── DatabaseError
    │   │   └── DatabaseConnectionError (retryable)
    │   ├── TimeSeriesError
    │   └── QueueError
    ├── BatchJobError
    ├── ConcurrentExecutionSkippedError
    ├── InputValidationError
    └── RetryableError / NonRetryableError (mixins)

"Package not found" is not an exception: the registry client returns it
as a normal result (see ingestion.extractors.registry_client.PackageNotFound).
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class PipelineException(Exception):
    """
    Base exception for all pipeline errors.
    
    Attributes:
        message: Human-readable error message
        context: Additional context information (package id, job name, etc.)
        original_exception: The original exception that was caught (if any)
    """
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)
        
        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()
        
        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception
    
    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"
        
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"
        
        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"
        
        return base_msg
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(PipelineException):
    """
    Mixin for errors that should trigger redelivery or retry.
    
    Use this for transient errors like:
    - Registry timeouts and 5xx responses
    - Rate limiting (HTTP 429)
    - Store connection failures
    """
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(PipelineException):
    """
    Mixin for errors that should NOT trigger retry logic.
    
    Use this for permanent errors like:
    - Malformed registry responses
    - Out-of-range query parameters
    """
    pass


# ============================================================================
# Registry Errors
# ============================================================================

class RegistryError(PipelineException):
    """
    Base exception for package registry failures.
    
    Context should include:
        - package_id: The package being looked up
        - url: The registry endpoint
        - status_code: HTTP status code (if applicable)
    """
    pass


class RegistryUnavailableError(RetryableError, RegistryError):
    """Registry unreachable, timing out, or failing fast while marked unavailable."""
    pass


class RateLimitError(RetryableError, RegistryError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class RegistryResponseError(NonRetryableError, RegistryError):
    """Registry answered with something we cannot interpret."""
    pass


# ============================================================================
# Store Errors
# ============================================================================

class StoreError(PipelineException):
    """Base exception for metadata, time-series and queue failures."""
    pass


class DatabaseError(StoreError):
    """
    Exception raised when relational store operations fail.
    
    Context should include:
        - operation: Type of database operation (SELECT, UPSERT, DELETE)
        - table_name: Name of the table
    """
    pass


class DatabaseConnectionError(RetryableError, DatabaseError):
    """Database connection errors that should be retried."""
    pass


class TimeSeriesError(StoreError):
    """
    Exception raised when the columnar time-series store fails.
    
    Context should include:
        - operation: Store operation name
        - rows: Batch size (for bulk writes)
    """
    pass


class QueueError(StoreError):
    """Exception raised when the work queue broker cannot be reached."""
    pass


# ============================================================================
# Job Errors
# ============================================================================

class BatchJobError(PipelineException):
    """
    A scheduled batch job failed as a whole.
    
    The run is recorded as failed and retried on the next scheduled
    invocation rather than partially.
    """
    pass


class ConcurrentExecutionSkippedError(PipelineException):
    """Another run of the same job holds the lock; this run was skipped."""
    pass


class InputValidationError(NonRetryableError):
    """Out-of-range parameters on a read path."""
    pass
