"""Supervision alerts raised by background work."""

import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.models.alerts import SupervisionAlert
from ratewise.services.results import NotFound

logger = logging.getLogger(__name__)


class AlertService:
    """Creates supervision alerts for dead events, overbookings, and channel problems."""

    async def event_dead(
        self, db: AsyncSession, hotel_id: str, event_id: uuid.UUID, event_type: str, attempts: int, last_error: str | None
    ) -> SupervisionAlert:
        return await self._create(
            db,
            hotel_id=hotel_id,
            type="event_dead",
            severity="critical",
            title=f"{event_type} event gave up after {attempts} attempts",
            body=last_error,
            reference_type="event",
            reference_id=str(event_id),
            details={"event_type": event_type, "attempts": attempts},
        )

    async def overbooking(
        self, db: AsyncSession, hotel_id: str, channel_id: str, channel_booking_id: str, details: dict
    ) -> SupervisionAlert:
        return await self._create(
            db,
            hotel_id=hotel_id,
            type="overbooking",
            severity="critical",
            title=f"Overbooking from {channel_id} booking {channel_booking_id}",
            body=f"Booking {channel_booking_id} could not be applied: no rooms left on {details.get('date', 'a stay night')}.",
            reference_type="channel_booking",
            reference_id=channel_booking_id,
            details={"channel_id": channel_id, **details},
        )

    async def credential_expiring(
        self, db: AsyncSession, hotel_id: str, channel_id: str, expires_at: datetime, days_left: int
    ) -> SupervisionAlert:
        return await self._create(
            db,
            hotel_id=hotel_id,
            type="credential_expiring",
            severity="critical" if days_left <= 7 else "warning",
            title=f"{channel_id} credentials expire in {days_left} days",
            body=f"Rotate the {channel_id} credentials before {expires_at.date().isoformat()}.",
            reference_type="channel",
            reference_id=channel_id,
            details={"expires_at": expires_at.isoformat(), "days_left": days_left},
        )

    async def channel_unhealthy(
        self, db: AsyncSession, hotel_id: str, channel_id: str, failures: int, last_error: str | None
    ) -> SupervisionAlert:
        return await self._create(
            db,
            hotel_id=hotel_id,
            type="channel_unhealthy",
            severity="warning",
            title=f"{channel_id} marked unhealthy after {failures} consecutive failures",
            body=last_error,
            reference_type="channel",
            reference_id=channel_id,
            details={"consecutive_failures": failures},
        )

    async def _create(
        self, db: AsyncSession, hotel_id: str, type: str, severity: str,
        title: str, body: str | None = None, reference_type: str | None = None,
        reference_id: str | None = None, details: dict | None = None,
    ) -> SupervisionAlert:
        alert = SupervisionAlert(
            hotel_id=hotel_id,
            type=type,
            severity=severity,
            title=title,
            body=body,
            reference_type=reference_type,
            reference_id=reference_id,
            details=details,
        )
        db.add(alert)
        logger.warning(f"[{hotel_id}] {severity} alert: {title}")
        return alert

    # ─── Supervision ───

    async def has_open(self, db: AsyncSession, hotel_id: str, type: str, reference_id: str) -> bool:
        result = await db.execute(
            select(SupervisionAlert.id).where(
                SupervisionAlert.hotel_id == hotel_id,
                SupervisionAlert.type == type,
                SupervisionAlert.reference_id == reference_id,
                SupervisionAlert.is_acknowledged.is_(False),
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list_alerts(
        self, db: AsyncSession, hotel_id: str, unacknowledged_only: bool = True, limit: int = 50
    ) -> list[SupervisionAlert]:
        stmt = select(SupervisionAlert).where(SupervisionAlert.hotel_id == hotel_id)
        if unacknowledged_only:
            stmt = stmt.where(SupervisionAlert.is_acknowledged.is_(False))
        result = await db.execute(stmt.order_by(SupervisionAlert.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def acknowledge(self, db: AsyncSession, hotel_id: str, alert_id: uuid.UUID) -> SupervisionAlert:
        alert = await db.get(SupervisionAlert, alert_id)
        if alert is None or alert.hotel_id != hotel_id:
            raise NotFound(f"Alert {alert_id} not found")
        alert.is_acknowledged = True
        await db.commit()
        return alert


alert_service = AlertService()
