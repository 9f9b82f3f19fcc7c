"""Synthesis backend exceptions."""
from __future__ import annotations


class BackendFailure(Exception):
    """Base exception for synthesis backend errors."""

    def __init__(self, message: str, status_code: int | None = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail or message


class BackendUnreachable(BackendFailure):
    """Backend could not be contacted (connection refused, DNS, timeout)."""


class BackendUnauthorized(BackendFailure):
    """Backend rejected or required a credential."""


class BackendError(BackendFailure):
    """Any other non-2xx response from the backend."""
