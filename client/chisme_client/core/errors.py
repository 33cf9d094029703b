"""
Session error taxonomy.

  NotConnectedError    transient — socket not Connected; the connection
                       manager retries on its own, callers re-issue later
  PermissionDenied     local pre-check failed or the server refused
  ValidationError      bad input, rejected before any network call
  StaleReferenceError  unknown / already-deleted id — callers treat as no-op
  AuthError            token rejected — fatal, no automatic retry
  ApiError             any other non-2xx from the REST API
"""

from __future__ import annotations

import builtins
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chisme_client.core.permissions import Permissions


class SessionError(Exception):
    """Base class for every error the session layer raises."""


class NotConnectedError(SessionError, builtins.ConnectionError):
    def __init__(self, message: str = "Not connected") -> None:
        super().__init__(message)


class PermissionDenied(SessionError):
    def __init__(self, message: str, required: Permissions | None = None) -> None:
        super().__init__(message)
        self.required = required


class ValidationError(SessionError, ValueError):
    pass


class StaleReferenceError(SessionError, LookupError):
    pass


class AuthError(SessionError):
    pass


class ApiError(SessionError):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"API error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
