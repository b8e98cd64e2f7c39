"""Bottle ORM model."""

import uuid
from datetime import datetime

from sqlalchemy import ARRAY, Float, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from cellar.db import Base


class Bottle(Base):
    __tablename__ = "bottles"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    wine_name: Mapped[str] = mapped_column(Text, nullable=False)
    producer: Mapped[str | None] = mapped_column(Text, nullable=True)
    vintage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    style: Mapped[str] = mapped_column(Text, nullable=False)
    region: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str | None] = mapped_column(Text, nullable=True)
    grapes: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, server_default="{}")
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())
