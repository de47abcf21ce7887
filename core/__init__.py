"""
Core utilities and configuration for the storefront export service.

This package provides foundational components used by the OAuth credential
lifecycle and the scheduled export pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Async engine, session factory and session helpers
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration with secret redaction
    retry: Reusable retry policy (attempts, backoff, retryable predicate)
    error_logger: Persistence of failures to the error_logs table
    clock: Timezone-aware time helpers

Usage:
    from core.config import settings
    from core.database import session_scope
    from core.exceptions import TokenError, ProviderError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Background database work
    async with session_scope() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "session_scope",
    "setup_logging",
    "RetryPolicy",
    # Exceptions
    "ETLException",
    "RetryableError",
    "NonRetryableError",
    "ConfigError",
    "CryptoError",
    "StateError",
    "TokenError",
    "ProviderError",
    "ExtractionError",
    "ValidationError",
    "TransformationError",
    "FormatError",
    "DestinationError",
    "ExecutionStateError",
]
