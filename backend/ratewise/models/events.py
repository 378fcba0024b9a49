"""Outbox event envelopes drained by the channel distributor."""

import uuid
from datetime import datetime

from sqlalchemy import Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ratewise.database import Base, JSONType, UTCDateTime
from ratewise.services.calendar import utcnow

EVENT_TYPES = (
    "rate_update",
    "availability_update",
    "channel_modification",
    "booking_sync",
    "overbooking_alert",
)

EVENT_STATUSES = ("pending", "in_flight", "succeeded", "failed", "dead")


class EventEnvelope(Base):
    __tablename__ = "event_envelopes"
    __table_args__ = (
        Index("idx_event_envelopes_drain", "type", "status", "next_attempt_at"),
        Index("idx_event_envelopes_queue", "status", "priority", "created_at"),
        Index("idx_event_envelopes_hotel", "hotel_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    # "roomTypeId|YYYY-MM-DD" strings; the hotel is implicit
    keys: Mapped[list] = mapped_column(JSONType, default=list)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    original_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    reason: Mapped[str | None] = mapped_column(String(50))
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=8)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    leased_until: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_error: Mapped[str | None] = mapped_column(Text)
    # Per-channel delivery state: {channel_id: {"status", "attempts", "last_error"}}
    channel_state: Mapped[dict] = mapped_column(JSONType, default=dict)
    correlation_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    def __repr__(self) -> str:
        return f"<EventEnvelope {self.type} {self.status} p{self.priority} {self.id}>"
