"""Tests for structured errors and the exception hierarchy."""
from __future__ import annotations

import httpx

from labby.errors import (
    CleanupError,
    ErrorCategory,
    InvalidTransitionError,
    LabbyError,
    ServiceError,
    StructuredError,
    categorize_httpx_error,
)


def _status_error(code: int, body: str = "") -> httpx.HTTPStatusError:
    req = httpx.Request("GET", "https://api.example.com/x")
    resp = httpx.Response(code, text=body, request=req)
    return httpx.HTTPStatusError("failed", request=req, response=resp)


class TestStructuredError:
    """Tests for StructuredError."""

    def test_to_dict(self):
        error = StructuredError(
            category=ErrorCategory.CONFIGURATION_ERROR,
            message="missing uri",
            service="proxmox_user",
            lab_id="lab1",
        )

        data = error.to_dict()
        assert data["category"] == "configuration_error"
        assert data["service"] == "proxmox_user"
        assert data["lab_id"] == "lab1"
        assert "timestamp" in data

    def test_to_error_message(self):
        error = StructuredError(
            category=ErrorCategory.NETWORK_TIMEOUT,
            message="timed out",
            details="read timeout",
            suggestions=["retry", "check network"],
        )

        assert error.to_error_message() == (
            "[network_timeout] timed out | Details: read timeout | Try: retry; check network"
        )


class TestCategorize:
    """Tests for categorize_httpx_error."""

    def test_auth(self):
        assert categorize_httpx_error(_status_error(403)).category == ErrorCategory.AUTHENTICATION_FAILED

    def test_server_error(self):
        error = categorize_httpx_error(_status_error(500, "kaboom"), service="guacamole")

        assert error.category == ErrorCategory.NETWORK_ERROR
        assert error.details == "kaboom"
        assert "guacamole" in error.message

    def test_long_body_truncated(self):
        error = categorize_httpx_error(_status_error(500, "x" * 500))

        assert len(error.details) == 200

    def test_connect(self):
        error = categorize_httpx_error(httpx.ConnectError("refused"))

        assert error.category == ErrorCategory.SERVICE_UNAVAILABLE
        assert "external service" in error.message


class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_cleanup_error_summary(self):
        error = CleanupError("lab1", [
            ("proxmox-main", ServiceError("pool busy")),
            ("tfc-edge", RuntimeError("boom")),
        ])

        assert isinstance(error, LabbyError)
        assert error.lab_id == "lab1"
        assert len(error.failures) == 2
        assert str(error) == "Cleanup failed for 2 service(s): proxmox-main: pool busy; tfc-edge: boom"

    def test_invalid_transition(self):
        error = InvalidTransitionError("lab1", "expired", "ready")

        assert error.current == "expired"
        assert "expired" in str(error) and "ready" in str(error)
