"""Base schema classes with camelCase aliases for the wire protocol.

Python code stays snake_case; JSON on the wire is camelCase.
"""

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Request/response payloads. Accepts both spellings, outputs camelCase."""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
    }


class CamelORMModel(BaseModel):
    """Read from SQLAlchemy rows, output camelCase."""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }
