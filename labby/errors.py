"""Error types for lab provisioning and cleanup.

Structured errors describe failures talking to external service APIs in a
form suitable for the progress log. The exception hierarchy below is what
the lifecycle, pipeline and cleanup code raise and catch.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Categories of errors for structured error handling."""
    # External service connectivity
    SERVICE_UNAVAILABLE = "service_unavailable"  # Cannot reach service API
    NETWORK_TIMEOUT = "network_timeout"  # Request timed out
    NETWORK_ERROR = "network_error"  # General network failure

    # External service responses
    AUTHENTICATION_FAILED = "authentication_failed"  # 401/403 from service
    RESOURCE_NOT_FOUND = "resource_not_found"  # 404 from service
    RESOURCE_CONFLICT = "resource_conflict"  # 409, object already exists

    # Local errors
    CONFIGURATION_ERROR = "configuration_error"  # Missing or invalid params
    INVALID_STATE = "invalid_state"  # Lab in unexpected state
    PERSISTENCE_ERROR = "persistence_error"  # Repository write failed
    INTERNAL_ERROR = "internal_error"  # Unexpected internal error


@dataclass
class StructuredError:
    """Structured representation of a failed service operation.

    Attributes:
        category: The error category for classification
        message: Human-readable error message
        details: Additional error details (e.g., response body)
        service: Service type involved (if applicable)
        lab_id: Lab being provisioned or cleaned up (if applicable)
        timestamp: When the error occurred
        suggestions: List of suggested actions to resolve
    """
    category: ErrorCategory
    message: str
    details: str | None = None
    service: str | None = None
    lab_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "service": self.service,
            "lab_id": self.lab_id,
            "timestamp": self.timestamp.isoformat(),
            "suggestions": self.suggestions,
        }

    def to_error_message(self) -> str:
        """Generate a concise one-line message for progress logs."""
        parts = [f"[{self.category.value}] {self.message}"]
        if self.details:
            parts.append(f"Details: {self.details}")
        if self.suggestions:
            parts.append(f"Try: {'; '.join(self.suggestions)}")
        return " | ".join(parts)


def categorize_httpx_error(
    error: Exception,
    service: str | None = None,
    lab_id: str | None = None,
) -> StructuredError:
    """Categorize an httpx exception into a StructuredError.

    Args:
        error: The httpx exception that occurred
        service: Service type that issued the request
        lab_id: Lab the request was made for

    Returns:
        StructuredError with appropriate category and message
    """
    import httpx

    target = service or "external service"

    if isinstance(error, httpx.TimeoutException):
        return StructuredError(
            category=ErrorCategory.NETWORK_TIMEOUT,
            message=f"Request to {target} timed out",
            details=str(error),
            service=service,
            lab_id=lab_id,
            suggestions=[
                "Check that the service endpoint is reachable",
                "Consider increasing service_http_timeout",
            ],
        )

    if isinstance(error, httpx.ConnectError):
        return StructuredError(
            category=ErrorCategory.SERVICE_UNAVAILABLE,
            message=f"Cannot connect to {target}",
            details=str(error),
            service=service,
            lab_id=lab_id,
            suggestions=[
                "Verify the endpoint URL in the service configuration",
                "Check firewall rules and TLS settings",
            ],
        )

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        body = error.response.text[:200] if error.response.text else ""

        if status_code in (401, 403):
            return StructuredError(
                category=ErrorCategory.AUTHENTICATION_FAILED,
                message=f"{target} rejected the configured credentials (HTTP {status_code})",
                details=body or None,
                service=service,
                lab_id=lab_id,
                suggestions=["Check the admin credentials in the service configuration"],
            )

        if status_code == 404:
            return StructuredError(
                category=ErrorCategory.RESOURCE_NOT_FOUND,
                message=f"{target} returned not found (HTTP 404)",
                details=body or None,
                service=service,
                lab_id=lab_id,
            )

        if status_code == 409:
            return StructuredError(
                category=ErrorCategory.RESOURCE_CONFLICT,
                message=f"{target} reports the resource already exists (HTTP 409)",
                details=body or None,
                service=service,
                lab_id=lab_id,
                suggestions=["Clean up leftovers from a previous lab with the same ID"],
            )

        return StructuredError(
            category=ErrorCategory.NETWORK_ERROR,
            message=f"{target} returned error (HTTP {status_code})",
            details=body or None,
            service=service,
            lab_id=lab_id,
        )

    return StructuredError(
        category=ErrorCategory.NETWORK_ERROR,
        message=f"Network error communicating with {target}",
        details=str(error),
        service=service,
        lab_id=lab_id,
    )


class LabbyError(Exception):
    """Base exception for provisioning and cleanup errors."""
    def __init__(self, message: str, lab_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.lab_id = lab_id


class LabNotFoundError(LabbyError):
    """No lab with the given ID exists."""


class InvalidDurationError(LabbyError):
    """Requested lab duration is outside the allowed range."""


class TemplateNotFoundError(LabbyError):
    """Referenced lab template does not exist."""


class InvalidTransitionError(LabbyError):
    """A lab status change is not allowed from its current status."""
    def __init__(self, lab_id: str, current: str, target: str):
        super().__init__(f"Lab {lab_id} cannot move from {current} to {target}", lab_id)
        self.current = current
        self.target = target


class ConfigurationError(LabbyError):
    """Service configuration is missing or invalid."""


class ServiceUnavailableError(LabbyError):
    """A service cannot accept another lab (inactive or at its limit)."""
    def __init__(self, message: str, service_id: str | None = None):
        super().__init__(message)
        self.service_id = service_id


class ServiceError(LabbyError):
    """An external service API call failed."""
    def __init__(self, message: str, service: str | None = None, lab_id: str | None = None,
                 structured: StructuredError | None = None):
        super().__init__(message, lab_id)
        self.service = service
        self.structured = structured


class CredentialPersistenceError(LabbyError):
    """A credential produced during setup could not be stored."""


class TagExhaustedError(LabbyError):
    """No free tag is left in the requested range."""


class CleanupError(LabbyError):
    """One or more services failed to clean up.

    Attributes:
        failures: (service config ID or type, exception) pairs in the
            order the services were attempted
    """
    def __init__(self, lab_id: str, failures: list[tuple[str, Exception]]):
        summary = "; ".join(f"{name}: {error}" for name, error in failures)
        super().__init__(f"Cleanup failed for {len(failures)} service(s): {summary}", lab_id)
        self.failures = failures
