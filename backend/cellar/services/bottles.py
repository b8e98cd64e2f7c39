"""Bottle service: create cellar entries."""

import logging

from sqlalchemy.orm import Session

from cellar.models.bottle import Bottle
from cellar.schemas.bottle import BottleInput, BottleResponse

logger = logging.getLogger(__name__)


class BottleService:
    def create(self, data: BottleInput, owner: str, db: Session) -> BottleResponse:
        """Persist one bottle for *owner* and return it."""
        bottle = Bottle(
            owner=owner,
            wine_name=data.wine_name,
            producer=data.producer,
            vintage=data.vintage,
            style=data.style,
            region=data.region,
            country=data.country,
            grapes=data.grapes,
            rating=data.rating,
            quantity=data.quantity,
            notes=data.notes,
        )
        db.add(bottle)
        db.commit()
        db.refresh(bottle)
        logger.info("created bottle %s for %s: %s", bottle.id, owner, bottle.wine_name)
        return BottleResponse.model_validate(bottle)
