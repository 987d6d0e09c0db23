"""Placemark records and destination membership."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.common.logging import get_logger

from . import models
from .errors import AlreadyMember, DestinationNotFound, NotMember, PlacemarkNotFound
from .maps import Viewport

logger = get_logger(__name__)


class PlaceStore:
    """Single source of truth for placemarks and destination membership.

    Each public mutation is one unit of work: it is committed before the
    method returns, so readers never see a half-applied promotion.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, placemark_id: int) -> models.Placemark:
        placemark = self.session.get(models.Placemark, placemark_id)
        if placemark is None:
            raise PlacemarkNotFound(placemark_id)
        return placemark

    def get_destination(self, destination_id: int) -> models.Destination:
        destination = self.session.get(models.Destination, destination_id)
        if destination is None:
            raise DestinationNotFound(destination_id)
        return destination

    def create_destination(self, name: str) -> models.Destination:
        destination = models.Destination(name=name)
        self.session.add(destination)
        self.session.commit()
        return destination

    def create_transient(
        self, name: str, address: str, latitude: float, longitude: float
    ) -> models.Placemark:
        placemark = models.Placemark(
            name=name, address=address, latitude=latitude, longitude=longitude
        )
        self.session.add(placemark)
        self.session.commit()
        return placemark

    def is_member(
        self, placemark: models.Placemark, destination: models.Destination
    ) -> bool:
        return placemark.destination_id == destination.id and placemark in (
            destination.placemarks
        )

    def promote(
        self, placemark_id: int, destination: models.Destination
    ) -> models.Placemark:
        placemark = self.get(placemark_id)
        if placemark.destination is not None:
            raise AlreadyMember(placemark.id, placemark.destination.id)
        # Appending through the collection sets placemark.destination and
        # its position in one step.
        destination.placemarks.append(placemark)
        self.session.commit()
        logger.info(
            "placemark.promoted", placemark_id=placemark.id, destination_id=destination.id
        )
        return placemark

    def demote(self, placemark_id: int) -> models.Placemark:
        placemark = self.get(placemark_id)
        owner = placemark.destination
        if owner is None:
            raise NotMember(placemark.id)
        owner.placemarks.remove(placemark)
        placemark.position = None
        self.session.commit()
        logger.info(
            "placemark.demoted", placemark_id=placemark.id, destination_id=owner.id
        )
        return placemark

    def transient(self) -> list[models.Placemark]:
        stmt = (
            select(models.Placemark)
            .where(models.Placemark.destination_id.is_(None))
            .order_by(models.Placemark.id)
        )
        return list(self.session.scalars(stmt))

    def purge_transient(self) -> int:
        """Delete every placemark that has no owning destination."""

        doomed = self.transient()
        for placemark in doomed:
            self.session.delete(placemark)
        self.session.commit()
        if doomed:
            logger.debug("placemark.purged", count=len(doomed))
        return len(doomed)

    def visible_set(self, destination: models.Destination) -> list[models.Placemark]:
        """Transient placemarks followed by the destination's members."""

        return self.transient() + list(destination.placemarks)

    def update_details(
        self, placemark_id: int, name: str, address: str
    ) -> models.Placemark:
        placemark = self.get(placemark_id)
        placemark.name = name.strip()
        placemark.address = address.strip()
        self.session.commit()
        return placemark

    def set_region(
        self, destination: models.Destination, viewport: Viewport
    ) -> models.Destination:
        destination.latitude = viewport.center.latitude
        destination.longitude = viewport.center.longitude
        destination.latitude_delta = viewport.span.latitude_delta
        destination.longitude_delta = viewport.span.longitude_delta
        self.session.commit()
        return destination
