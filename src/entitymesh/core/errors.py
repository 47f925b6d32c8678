"""
Custom exceptions for the entitymesh data-access layer.

Services report errors in two ways, chosen per service with ``throw_errors``:
- raise the canonical ``DBError`` as an exception
- return the error string and keep the error in ``service.last_error``

Every adapter failure is converted to ``DBError`` so consumers handle errors
from different backends the same way.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any, Optional


class ErrorLevel(IntEnum):
    """
    Severity of a DB error.

    Informational only: used to filter log output, never for control flow.
    """

    INFO = 10
    WARNING = 20
    ERROR = 30
    # The service can't keep working, the rest of the system still can
    CRITICAL = 40
    # The whole system needs a restart
    FATAL = 50
    # Data in the backend may be corrupted, must be surfaced loudly
    DAMAGE = 60

    @property
    def log_level(self) -> int:
        """Matching ``logging`` level."""
        if self >= ErrorLevel.CRITICAL:
            return logging.CRITICAL
        return {
            ErrorLevel.INFO: logging.INFO,
            ErrorLevel.WARNING: logging.WARNING,
            ErrorLevel.ERROR: logging.ERROR,
        }[self]


# Substrings (lowercase) that mark a credential / session problem
AUTH_ERROR_MARKERS = (
    "token expired",
    "token",
    "permission",
    "invalid user credentials",
    "forbidden",
    "unauthorized",
)


class EntityMeshError(Exception):
    """Base exception for all entitymesh errors."""
    pass


class DBError(EntityMeshError):
    """
    Canonical error for entity operations.

    Carries the entity (table) and field involved, a numeric code (HTTP status
    for REST backends), a backend error id and a severity level.
    """

    default_level = ErrorLevel.ERROR

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        field: Optional[str] = None,
        level: Optional[ErrorLevel] = None,
        code: Optional[int] = None,
        err_id: Optional[str] = None,
        data: Any = None,
    ):
        self.message = message
        self.table = table or None
        self.field = field or None
        self.level = level if level is not None else self.default_level
        self.code = code
        self.err_id = err_id
        self.data = data
        super().__init__(message)

    def __str__(self) -> str:
        where = f" [{self.table}{'.' + self.field if self.field else ''}]" if self.table else ""
        return f"{self.level.name}{where}: {self.message}"

    @property
    def is_auth_failure(self) -> bool:
        """True when the error means the session/credentials are not valid."""
        if self.code in (401, 403):
            return True
        text = f"{self.message} {self.err_id or ''}".lower()
        return any(marker in text for marker in AUTH_ERROR_MARKERS)

    @classmethod
    def from_exception(cls, exc: BaseException, table: Optional[str] = None) -> DBError:
        """Wrap any adapter exception into a canonical error."""
        if isinstance(exc, DBError):
            if table and not exc.table:
                exc.table = table
            return exc
        return BackendError(str(exc) or exc.__class__.__name__, table=table, data=exc)

    @classmethod
    def from_directus(
        cls,
        payload: Any,
        status_code: Optional[int] = None,
        table: Optional[str] = None,
    ) -> DBError:
        """
        Parse the Directus error envelope.

        {"errors": [{"message": "...", "extensions": {"code": "FORBIDDEN",
                                                      "collection": "x",
                                                      "field": "y"}}]}
        """
        messages: list[str] = []
        field = None
        err_id = None
        errors = payload.get("errors") if isinstance(payload, dict) else None
        for err in errors or []:
            messages.append(str(err.get("message", "")))
            extensions = err.get("extensions") or {}
            table = extensions.get("collection") or table
            field = extensions.get("field") or field
            err_id = extensions.get("code") or err_id
        message = "\n".join(m for m in messages if m) or f"HTTP {status_code}"
        return BackendError(message, table=table, field=field, code=status_code, err_id=err_id, data=payload)


class ValidationError(DBError):
    """Raised for caller mistakes: missing id, limits exceeded. Never retried."""

    default_level = ErrorLevel.WARNING


class ReadonlyError(ValidationError):
    """Raised when a mutating call is made on a readonly service."""

    def __init__(self, table: str):
        super().__init__(f"{table} is readonly", table=table)


class BackendError(DBError):
    """Raised when a backend call fails (transport or backend-reported)."""
    pass


class AuthError(DBError):
    """Raised when a server ends up in the terminal auth error state."""
    pass


class ConfigError(DBError):
    """Raised when broker/service configuration is invalid."""

    default_level = ErrorLevel.CRITICAL
