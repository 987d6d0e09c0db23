"""Destination repository records."""

from __future__ import annotations

from sqlalchemy import Column, Float, ForeignKey, Integer, String
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Destination(Base):
    __tablename__ = "destinations"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, default="")
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    latitude_delta = Column(Float, nullable=True)
    longitude_delta = Column(Float, nullable=True)

    # No delete-orphan: a placemark removed from the list becomes transient.
    placemarks = relationship(
        "Placemark",
        back_populates="destination",
        order_by="Placemark.position",
        collection_class=ordering_list("position"),
        cascade="all",
    )

    @property
    def has_region(self) -> bool:
        return None not in (
            self.latitude,
            self.longitude,
            self.latitude_delta,
            self.longitude_delta,
        )


class Placemark(Base):
    __tablename__ = "placemarks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, default="")
    address = Column(String(1024), nullable=False, default="")
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    destination_id = Column(
        Integer,
        ForeignKey("destinations.id", ondelete="CASCADE"),
        index=True,
        nullable=True,
    )
    position = Column(Integer, nullable=True)

    destination = relationship("Destination", back_populates="placemarks")

    @property
    def is_transient(self) -> bool:
        return self.destination is None
