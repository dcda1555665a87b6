"""
Custom exception classes and error handling.

Two families live here:
- API exceptions: consistent JSON error responses from the routers.
- Engine exceptions: storage and backfill failures raised by the
  power-curve services and handled by the Celery tasks.
"""
from fastapi import HTTPException, status
from typing import Any, Dict, List, Optional


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=422,
            detail=detail,
            error_code=error_code
        )


class StorageError(Exception):
    """A read or write against the storage backend failed."""

    def __init__(self, operation: str, detail: str):
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


class PartialBackfillError(Exception):
    """
    One or more rolling windows failed during a full backfill.

    Raised only after every window has been attempted. Windows that
    completed keep their writes; `summary` carries the per-window results.
    """

    def __init__(self, failed_windows: List[str], errors: Dict[str, str], summary: Any = None):
        super().__init__(
            f"Backfill failed for {len(failed_windows)} window(s): {', '.join(failed_windows)}"
        )
        self.failed_windows = failed_windows
        self.errors = errors
        self.summary = summary
