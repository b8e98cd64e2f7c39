"""Unit tests for BottleService."""

import uuid
from datetime import datetime
from unittest.mock import MagicMock

from cellar.models.bottle import Bottle
from cellar.schemas.bottle import BottleInput
from cellar.services.bottles import BottleService


def _db() -> MagicMock:
    db = MagicMock()

    def refresh(bottle: Bottle) -> None:
        bottle.id = uuid.uuid4()
        bottle.created_at = datetime(2026, 3, 1, 9, 30, 0)

    db.refresh.side_effect = refresh
    return db


class TestCreate:
    def test_persists_bottle_for_owner(self) -> None:
        db = _db()
        data = BottleInput(wine_name="Sancerre", style="White", grapes="Sauvignon Blanc", quantity=3)

        result = BottleService().create(data, "alice", db)

        bottle = db.add.call_args.args[0]
        assert isinstance(bottle, Bottle)
        assert bottle.owner == "alice"
        assert bottle.grapes == ["Sauvignon Blanc"]
        db.commit.assert_called_once()
        assert result.id == bottle.id
        assert result.wine_name == "Sancerre"
        assert result.quantity == 3

    def test_response_serializes_camel_case(self) -> None:
        data = BottleInput(wine_name="Rioja Gran Reserva", style="Red", vintage="2012")

        result = BottleService().create(data, "default", _db())

        body = result.model_dump(by_alias=True)
        assert body["wineName"] == "Rioja Gran Reserva"
        assert body["vintage"] == 2012
        assert "createdAt" in body
