"""
Custom exceptions for the export pipeline with structured error context.

This module provides the exception hierarchy shared by the OAuth credential
lifecycle and the scheduled ETL pipeline. Each exception carries context
information that ends up in logs and in the ``JobExecution.error_details``
column of a failed run.

Exception Hierarchy:
    ETLException (base)
    ├── ConfigError              (missing/invalid OAuth or destination config)
    ├── CryptoError              (master secret missing, tampered ciphertext)
    ├── StateError               (OAuth state missing, expired or reused)
    ├── TokenError               (refresh token missing or rejected)
    ├── ProviderError            (transient provider/network failure)
    ├── ExtractionError
    ├── ValidationError          (carries every violation)
    ├── TransformationError
    ├── FormatError
    ├── DestinationError
    ├── ExecutionStateError      (illegal JobExecution status change)
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


class ETLException(Exception):
    """
    Base exception for all pipeline and credential errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (destination, schedule, etc.)
        original_exception: The original exception that was caught (if any)
    """

    code = "ETL_ERROR"

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

        self.context["error_timestamp"] = self.timestamp.isoformat()

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
            "context": {k: to_jsonable(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


def to_jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    return str(value)


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Provider outages (HTTP 5xx)
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Missing configuration
    - Invalid data
    """
    pass


# ============================================================================
# Configuration and Credential Errors
# ============================================================================

class ConfigError(NonRetryableError):
    """
    Missing or invalid OAuth/destination configuration.

    Context should include:
        - destination_id: Destination being configured
        - missing_fields: Names of the absent fields (if applicable)
    """
    code = "CONFIG_ERROR"


class CryptoError(NonRetryableError):
    """Encryption setup or decryption failure. Never carries plaintext."""
    code = "CRYPTO_ERROR"


class StateError(NonRetryableError):
    """OAuth state parameter missing, expired or already consumed."""
    code = "STATE_ERROR"


class TokenError(NonRetryableError):
    """
    Refresh token missing or rejected by the provider.

    The user has to authorize the destination again; retrying cannot succeed.
    """

    code = "TOKEN_ERROR"
    reauthorization_required = True


class ProviderError(RetryableError):
    """
    Transient failure talking to an OAuth or destination provider.

    Context should include:
        - provider: Provider name
        - status_code: HTTP status code (if a response was received)
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        status_code: Optional[int] = None,
        retryable: bool = True
    ):
        super().__init__(message, context, original_exception)
        self.status_code = status_code
        self.retryable = retryable
        if status_code is not None:
            self.context["status_code"] = status_code


# ============================================================================
# Pipeline Stage Errors
# ============================================================================

class ExtractionError(NonRetryableError):
    """
    Source extraction failed.

    Context should include:
        - source_id: Source being extracted
        - api_name: API that failed (if applicable)
    """
    code = "EXTRACTION_ERROR"


class ValidationError(NonRetryableError):
    """
    Extracted records violated the validation rules.

    Attributes:
        violations: Every violation found, never a partial list
    """

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        violations: Optional[List[Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.violations = list(violations or [])
        self.context["violation_count"] = len(self.violations)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["violations"] = [str(v) for v in self.violations]
        return data


class TransformationError(NonRetryableError):
    """
    Transformation configuration is invalid or could not be applied.

    Context should include:
        - transformation_id: Transformation being applied
        - operation: Index/type of the failing operation
    """
    code = "TRANSFORMATION_ERROR"


class FormatError(NonRetryableError):
    """Unsupported file format or converter failure."""
    code = "FORMAT_ERROR"


class DestinationError(NonRetryableError):
    """
    Upload to a destination failed and must not be retried silently.

    Attributes:
        reauthorization_required: True when the user has to authorize again
    """

    code = "DESTINATION_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        reauthorization_required: bool = False
    ):
        super().__init__(message, context, original_exception)
        self.reauthorization_required = reauthorization_required
        if reauthorization_required:
            self.context["reauthorization_required"] = True


class ExecutionStateError(NonRetryableError):
    """Illegal JobExecution status transition."""
    code = "EXECUTION_STATE_ERROR"
