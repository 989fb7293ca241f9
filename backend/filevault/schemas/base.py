"""Base schema classes with camelCase alias generation.

Python code stays snake_case; the React client sees camelCase JSON.
Response models are built from ORM rows, so they read attributes.
"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Request bodies: accepts camelCase or snake_case, rejects unknown keys."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "forbid",
    }


class CamelORMModel(BaseModel):
    """Response bodies read from SQLAlchemy rows or service dataclasses."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }
