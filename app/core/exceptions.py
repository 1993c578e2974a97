"""
Domain errors raised by services.

Each error is an HTTPException so services can raise it directly and FastAPI
turns it into the matching response.
"""

from fastapi import HTTPException, status
from typing import Any, Dict, List, Optional


class NotFoundError(HTTPException):
    def __init__(self, resource: str = "Resource", identifier: Optional[str] = None):
        detail = f"{resource} not found" if not identifier else f"{resource} '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ConflictError(HTTPException):
    def __init__(self, message: str):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=message)


class ValidationError(HTTPException):
    """400 with a message and a list of {field, message} entries."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": message, "errors": self.errors},
        )


class RecipeConfigurationError(ValidationError):
    """Recipe metadata is unusable: dependency cycle, unknown dependency recipe."""


class QuotaExceededError(HTTPException):
    def __init__(self, reason: str, shortfalls: Optional[List[Dict[str, Any]]] = None):
        self.reason = reason
        self.shortfalls = shortfalls or []
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": reason, "shortfalls": self.shortfalls},
        )


class InternalError(HTTPException):
    def __init__(self, message: str = "Internal server error"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)


class DataTransferError(HTTPException):
    """A data export or import command failed inside the pod."""

    def __init__(self, message: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=message)
