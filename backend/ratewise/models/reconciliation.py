"""Channel bookings, reconciliation records, and inbound idempotency keys."""

import uuid
import datetime as dt
from decimal import Decimal

from sqlalchemy import Date, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ratewise.database import Base, JSONType, UTCDateTime
from ratewise.services.calendar import utcnow


class ChannelBooking(Base):
    __tablename__ = "channel_bookings"
    __table_args__ = (
        UniqueConstraint("channel", "channel_booking_id", name="uq_channel_bookings_ref"),
        Index("idx_channel_bookings_hotel", "hotel_id", "check_in"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    channel_booking_id: Mapped[str] = mapped_column(String(100), nullable=False)
    room_type_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    check_in: Mapped[dt.date] = mapped_column(Date, nullable=False)
    check_out: Mapped[dt.date] = mapped_column(Date, nullable=False)
    rooms: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    guest_name: Mapped[str | None] = mapped_column(String(200))
    guest_email: Mapped[str | None] = mapped_column(String(200))
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    currency: Mapped[str | None] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="confirmed")  # confirmed | modified | cancelled | checked_out
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="channel")
    last_sequence: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class ReconciliationRecord(Base):
    __tablename__ = "reconciliation_records"
    __table_args__ = (Index("idx_reconciliation_booking", "channel_id", "channel_booking_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(50), nullable=False)
    channel_booking_id: Mapped[str] = mapped_column(String(100), nullable=False)
    internal_booking_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    modification_type: Mapped[str] = mapped_column(String(20), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, default=0)
    old_values: Mapped[dict | None] = mapped_column(JSONType)
    new_values: Mapped[dict | None] = mapped_column(JSONType)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)  # applied | overbooked | drift_corrected | refused | no_booking
    notes: Mapped[str | None] = mapped_column(Text)
    resolved_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)


class InboundOperation(Base):
    """Idempotency ledger for channel callbacks."""

    __tablename__ = "inbound_operations"
    __table_args__ = (
        UniqueConstraint(
            "channel", "channel_booking_id", "modification_type", "sequence",
            name="uq_inbound_operations_key",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    channel_booking_id: Mapped[str] = mapped_column(String(100), nullable=False)
    modification_type: Mapped[str] = mapped_column(String(20), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reconciliation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)
