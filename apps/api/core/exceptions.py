"""
API errors.

Rendered by the handler in ``main.py`` as ``{"detail", "error_code"}``.
Services mostly raise domain errors (``NormalizationError``,
``InvalidCursorError``) that routers translate into these.
"""
from typing import Dict, Optional

from fastapi import HTTPException, status


class APIException(HTTPException):
    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class BadRequestError(APIException):
    """The request envelope itself is malformed (e.g. no ``data`` object)."""

    def __init__(self, detail: str, error_code: str = "INVALID_PAYLOAD"):
        super().__init__(status.HTTP_400_BAD_REQUEST, detail, error_code)


class UnauthorizedError(APIException):
    def __init__(self, detail: str = "Authentication required"):
        super().__init__(status.HTTP_401_UNAUTHORIZED, detail, "UNAUTHORIZED", {"WWW-Authenticate": "Bearer"})


class NotFoundError(APIException):
    def __init__(self, resource: str, identifier: str):
        super().__init__(status.HTTP_404_NOT_FOUND, f"{resource} not found: {identifier}", "NOT_FOUND")


class ConflictError(APIException):
    def __init__(self, detail: str):
        super().__init__(status.HTTP_409_CONFLICT, detail, "CONFLICT")


class PayloadTooLargeError(APIException):
    def __init__(self, limit_bytes: int):
        super().__init__(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            f"Payload exceeds {limit_bytes} bytes",
            "PAYLOAD_TOO_LARGE",
        )


class ValidationError(APIException):
    """
    Well-formed request that breaks a rule (limits, cursor format).

    ``error_code`` defaults to ``VALIDATION_ERROR`` or, when a field is
    named, ``VALIDATION_ERROR_<FIELD>``.
    """

    def __init__(self, detail: str, field: Optional[str] = None, error_code: Optional[str] = None):
        if error_code is None:
            error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(status.HTTP_422_UNPROCESSABLE_ENTITY, detail, error_code)
