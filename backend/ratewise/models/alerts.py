"""Supervision alerts raised by background work."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ratewise.database import Base, JSONType, UTCDateTime
from ratewise.services.calendar import utcnow


class SupervisionAlert(Base):
    __tablename__ = "supervision_alerts"
    __table_args__ = (Index("idx_supervision_alerts_hotel", "hotel_id", "is_acknowledged"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)  # event_dead | overbooking | credential_expiring | channel_unhealthy
    severity: Mapped[str] = mapped_column(String(10), nullable=False, default="warning")  # info | warning | critical
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    body: Mapped[str | None] = mapped_column(Text)
    reference_type: Mapped[str | None] = mapped_column(String(30))
    reference_id: Mapped[str | None] = mapped_column(String(100))
    details: Mapped[dict | None] = mapped_column(JSONType)
    is_acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
