"""Shared Pydantic schemas."""
from filevault.schemas.base import CamelModel


class DeleteResponse(CamelModel):
    deleted: bool = True
    id: str = ""


class ErrorResponse(CamelModel):
    detail: str
    error: str
    retryable: bool
