"""Performer model for Runnermatch.

A performer ("runner") is someone who can take errands or commissions.
The dispatcher reads the live location, availability flag and rating
from this table on every ranking pass.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Float, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from runnermatch.database.models.base import Base, TimestampMixin, UTCDateTime
from runnermatch.geo import Location


class Performer(TimestampMixin, Base):
    """A runner who can be offered tasks.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        name: Display name.
        latitude: Last reported latitude, or None if never reported.
        longitude: Last reported longitude, or None if never reported.
        location_updated_at: When the location was last reported.
        is_available: Whether the runner is currently accepting work.
        rating: Aggregate rating on a 0..5 scale, or None if unrated.
    """

    __tablename__ = "performers"
    __table_args__ = (
        Index("ix_performers_available_lat_lon", "is_available", "latitude", "longitude"),
    )

    name: Mapped[str] = mapped_column(Text, nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    is_available: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)

    @property
    def location(self) -> Location | None:
        """Current location, or None when either coordinate is missing."""
        if self.latitude is None or self.longitude is None:
            return None
        return Location(latitude=self.latitude, longitude=self.longitude)
