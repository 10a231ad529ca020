"""
Custom exceptions for Sprint Watch.

This module defines custom exception classes so callers can tell
authentication failures apart from transient remote failures.
"""

from typing import Any


class SprintWatchError(Exception):
    """Base exception for Sprint Watch errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code or "SPRINT_WATCH_ERROR"
        self.context = context or {}


class RallyAPIError(SprintWatchError):
    """Exception for non-retryable Rally API responses."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "RALLY_API_ERROR", context)
        self.status_code = status_code


class AuthenticationError(SprintWatchError):
    """Exception for rejected or missing credentials (401/403)."""

    def __init__(
        self,
        message: str = "Rally authentication failed",
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "AUTHENTICATION_ERROR", context)


class TransientRemoteError(SprintWatchError):
    """Exception for network failures, 429 and 5xx once retries are exhausted."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "TRANSIENT_REMOTE_ERROR", context)
        self.status_code = status_code


class MalformedResponseError(TransientRemoteError):
    """Exception for non-JSON or schema-violating response bodies."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, status_code, context)
        self.code = "MALFORMED_RESPONSE_ERROR"


class ConfigurationIncompleteError(SprintWatchError):
    """Exception for trackers that cannot be polled without user action."""

    def __init__(
        self,
        message: str = "Select a sprint before polling.",
        tracker_id: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "CONFIGURATION_INCOMPLETE", context)
        self.tracker_id = tracker_id


class StateError(SprintWatchError):
    """Exception for unreadable or unwritable persisted state."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "STATE_ERROR", context)


class TransportFailure(SprintWatchError):
    """Exception raised by a request executor that could not reach the service."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "TRANSPORT_FAILURE", context)
