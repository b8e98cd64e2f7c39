"""Pydantic schemas for bottles and CSV import rows."""

import logging
import re
import uuid
from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field, field_validator

from cellar.schemas.base import CamelORMModel

logger = logging.getLogger(__name__)

_GRAPE_SPLIT_RE = re.compile(r"[,;]")


def _blank_to_none(v: object) -> object:
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


class BottleInput(BaseModel):
    """One bottle to create. Accepts our field names and common cellar-export headers."""

    wine_name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("wine_name", "Wine name", "Wine", "Name"),
    )
    producer: str | None = Field(
        default=None, validation_alias=AliasChoices("producer", "Winery", "Producer")
    )
    vintage: int | None = Field(default=None, validation_alias=AliasChoices("vintage", "Vintage", "Year"))
    style: str = Field(
        min_length=1,
        validation_alias=AliasChoices("style", "Wine type", "Type", "Style", "Color"),
    )
    region: str | None = Field(default=None, validation_alias=AliasChoices("region", "Region"))
    country: str | None = Field(default=None, validation_alias=AliasChoices("country", "Country"))
    grapes: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("grapes", "Grapes", "Grape")
    )
    rating: float | None = Field(
        default=None,
        validation_alias=AliasChoices("rating", "Average rating", "Avg rating", "Rating"),
    )
    quantity: int = Field(default=1, ge=1, validation_alias=AliasChoices("quantity", "Quantity", "Count"))
    notes: str | None = Field(default=None, validation_alias=AliasChoices("notes", "Notes", "Personal note"))

    @field_validator("wine_name", "style", mode="before")
    @classmethod
    def strip_required(cls, v: object) -> object:
        return v.strip() if isinstance(v, str) else v

    @field_validator("producer", "region", "country", "notes", mode="before")
    @classmethod
    def blank_is_none(cls, v: object) -> object:
        return _blank_to_none(v)

    @field_validator("vintage", mode="before")
    @classmethod
    def parse_vintage(cls, v: object) -> int | None:
        v = _blank_to_none(v)
        if v is None:
            return None
        try:
            return int(str(v))
        except ValueError:
            # "NV" and other non-numeric vintages
            return None

    @field_validator("quantity", mode="before")
    @classmethod
    def default_quantity(cls, v: object) -> object:
        v = _blank_to_none(v)
        return 1 if v is None else v

    @field_validator("rating", mode="before")
    @classmethod
    def parse_rating(cls, v: object) -> float | None:
        """Accept "4.2" or "4,2"; values outside 0-5 are dropped."""
        v = _blank_to_none(v)
        if v is None:
            return None
        try:
            value = float(str(v).replace(",", "."))
        except ValueError:
            return None
        if not 0 <= value <= 5:
            logger.warning("rating %s is outside the 0-5 range, ignoring it", value)
            return None
        return value

    @field_validator("grapes", mode="before")
    @classmethod
    def split_grapes(cls, v: object) -> object:
        if v is None:
            return []
        if isinstance(v, str):
            return [g.strip() for g in _GRAPE_SPLIT_RE.split(v) if g.strip()]
        return v


class BottleResponse(CamelORMModel):
    id: uuid.UUID
    owner: str
    wine_name: str
    producer: str | None
    vintage: int | None
    style: str
    region: str | None
    country: str | None
    grapes: list[str]
    rating: float | None
    quantity: int
    notes: str | None
    created_at: datetime


class ImportFailure(BaseModel):
    row_number: int
    reason: str
