"""Availability rows, one per hotel, room type and date."""

import uuid
import datetime as dt

from sqlalchemy import Boolean, CheckConstraint, Date, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ratewise.database import Base, UTCDateTime
from ratewise.services.calendar import utcnow


class AvailabilityRow(Base):
    __tablename__ = "availability_rows"
    __table_args__ = (
        UniqueConstraint("hotel_id", "room_type_id", "date", name="uq_availability_rows_key"),
        CheckConstraint("sold_rooms >= 0", name="ck_availability_sold"),
        CheckConstraint("blocked_rooms >= 0", name="ck_availability_blocked"),
        CheckConstraint("sold_rooms + blocked_rooms <= total_rooms", name="ck_availability_capacity"),
        CheckConstraint("min_stay >= 1 AND min_stay <= max_stay", name="ck_availability_stay"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    room_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    total_rooms: Mapped[int] = mapped_column(Integer, nullable=False)
    sold_rooms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    blocked_rooms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stop_sell: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    closed_to_arrival: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    closed_to_departure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    min_stay: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_stay: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def available_rooms(self) -> int:
        return self.total_rooms - self.sold_rooms - self.blocked_rooms

    @property
    def occupancy_pct(self) -> float:
        if not self.total_rooms:
            return 100.0
        return (self.sold_rooms + self.blocked_rooms) / self.total_rooms * 100
