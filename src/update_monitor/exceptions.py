"""
Custom exceptions for the update ingestion monitor.

This module defines the error taxonomy used across the monitor so callers can
tell configuration problems, storage failures, provider errors and consumer
failures apart.
"""

from typing import Any


class UpdateMonitorError(Exception):
    """Base exception for update monitor errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code or "UPDATE_MONITOR_ERROR"
        self.context = context or {}


class ConfigurationError(UpdateMonitorError):
    """Exception for configuration related errors (e.g. missing token)."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "CONFIGURATION_ERROR", context)


class StorageError(UpdateMonitorError):
    """Exception raised when the offset storage medium is unavailable."""

    def __init__(
        self,
        message: str,
        account_id: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "STORAGE_ERROR", context)
        self.account_id = account_id


class ProviderAPIError(UpdateMonitorError):
    """
    Exception for Bot API errors.

    Carries the provider's ``error_code`` and ``description`` together with the
    API ``method`` that failed, which is what conflict classification keys on.
    """

    def __init__(
        self,
        message: str,
        method: str | None = None,
        error_code: int | None = None,
        description: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "PROVIDER_API_ERROR", context)
        self.method = method
        self.error_code = error_code
        self.description = description


class ConsumerError(UpdateMonitorError):
    """Exception raised when the consumer fails to handle an update."""

    def __init__(
        self,
        message: str,
        sequence_id: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "CONSUMER_ERROR", context)
        self.sequence_id = sequence_id


class WebhookStartError(UpdateMonitorError):
    """Exception for failures while starting the webhook receiver."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "WEBHOOK_START_ERROR", context)
