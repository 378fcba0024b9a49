"""Channel configuration and the log of outbound channel calls."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ratewise.database import Base, JSONType, UTCDateTime
from ratewise.services.calendar import utcnow


class ChannelConfig(Base):
    __tablename__ = "channel_configs"
    __table_args__ = (UniqueConstraint("hotel_id", "channel_id", name="uq_channel_configs_key"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(50), nullable=False)
    channel_name: Mapped[str | None] = mapped_column(String(100))
    adapter: Mapped[str] = mapped_column(String(20), nullable=False)  # booking_com | expedia | airbnb | agoda | generic
    hotel_timezone: Mapped[str | None] = mapped_column(String(64))

    # Opaque secrets; never logged
    credentials: Mapped[dict | None] = mapped_column(JSONType)
    backup_credentials: Mapped[dict | None] = mapped_column(JSONType)
    credential_status: Mapped[str] = mapped_column(String(20), default="active")  # active | rotated | revoked
    credential_version: Mapped[int] = mapped_column(Integer, default=1)
    credential_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    credential_rotated_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    endpoints: Mapped[dict] = mapped_column(JSONType, default=dict)  # {"rates": url, "inventory": url, "health": url, ...}
    supported_currencies: Mapped[list] = mapped_column(JSONType, default=list)
    sync_flags: Mapped[list] = mapped_column(JSONType, default=list)
    timeout_ms: Mapped[int | None] = mapped_column(Integer)
    retry_policy: Mapped[dict | None] = mapped_column(JSONType)
    max_concurrency: Mapped[int | None] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Health
    connection_status: Mapped[str] = mapped_column(String(20), default="connected")  # connected | degraded | unhealthy | disconnected
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_sync_rates: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_sync_inventory: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_sync_content: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_error: Mapped[str | None] = mapped_column(Text)
    last_error_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<ChannelConfig {self.hotel_id}/{self.channel_id} {self.connection_status}>"


class ChannelCall(Base):
    __tablename__ = "channel_calls"
    __table_args__ = (Index("idx_channel_calls_event", "event_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("event_envelopes.id", ondelete="SET NULL")
    )
    hotel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(50), nullable=False)
    currency: Mapped[str | None] = mapped_column(String(3))
    method: Mapped[str] = mapped_column(String(10), default="POST")
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    request_payload: Mapped[dict | None] = mapped_column(JSONType)
    status_code: Mapped[int | None] = mapped_column(Integer)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)  # success | warning | auth_failed | rate_limited | transient
    error: Mapped[str | None] = mapped_column(Text)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
