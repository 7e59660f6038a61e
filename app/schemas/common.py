"""Response envelopes shared by all endpoints."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope: ``{success, data, message}``."""

    success: bool = True
    data: T | None = None
    message: str | None = None


class ErrorDetail(BaseModel):
    """Machine-readable error code plus a human message."""

    code: str
    message: str
    details: list | dict | None = None


class ErrorResponse(BaseModel):
    """Failure envelope: ``{success: false, error: {code, message}}``."""

    success: bool = False
    error: ErrorDetail
