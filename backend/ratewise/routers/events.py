"""Supervision router: event queue, dead letters, alerts and reconciliation records."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.database import get_db
from ratewise.dependencies import rate_limit, raise_core
from ratewise.models.alerts import SupervisionAlert
from ratewise.models.events import EventEnvelope
from ratewise.models.reconciliation import ReconciliationRecord
from ratewise.services.alert_service import alert_service
from ratewise.services.event_bus import event_bus
from ratewise.services.reconciler import reconciler
from ratewise.services.results import CoreError

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(rate_limit)])


class ResolveRequest(BaseModel):
    notes: str | None = None


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _envelope_dict(e: EventEnvelope) -> dict:
    return {
        "id": str(e.id),
        "type": e.type,
        "status": e.status,
        "reason": e.reason,
        "priority": e.priority,
        "attempts": e.attempts,
        "max_attempts": e.max_attempts,
        "keys": e.keys or [],
        "payload": e.payload,
        "channel_state": e.channel_state or {},
        "last_error": e.last_error,
        "correlation_id": e.correlation_id,
        "created_at": _iso(e.created_at),
        "completed_at": _iso(e.completed_at),
    }


def _alert_dict(a: SupervisionAlert) -> dict:
    return {
        "id": str(a.id),
        "type": a.type,
        "severity": a.severity,
        "title": a.title,
        "body": a.body,
        "reference_type": a.reference_type,
        "reference_id": a.reference_id,
        "details": a.details,
        "is_acknowledged": a.is_acknowledged,
        "created_at": _iso(a.created_at),
    }


def _record_dict(r: ReconciliationRecord) -> dict:
    return {
        "id": str(r.id),
        "channel_id": r.channel_id,
        "channel_booking_id": r.channel_booking_id,
        "internal_booking_id": str(r.internal_booking_id) if r.internal_booking_id else None,
        "modification_type": r.modification_type,
        "sequence": r.sequence,
        "old_values": r.old_values,
        "new_values": r.new_values,
        "outcome": r.outcome,
        "notes": r.notes,
        "resolved_at": _iso(r.resolved_at),
        "created_at": _iso(r.created_at),
    }


# ─── Event queue ───


@router.get("/{hotel_id}/events/stats")
async def event_stats(hotel_id: str, db: AsyncSession = Depends(get_db)):
    return await event_bus.stats(db, hotel_id)


@router.get("/{hotel_id}/events/dead")
async def dead_letters(hotel_id: str, limit: int = Query(default=50, ge=1, le=500), db: AsyncSession = Depends(get_db)):
    envelopes = await event_bus.dead_letters(db, hotel_id, limit)
    return {"events": [_envelope_dict(e) for e in envelopes], "count": len(envelopes)}


@router.post("/{hotel_id}/events/{event_id}/requeue")
async def requeue_event(hotel_id: str, event_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    try:
        envelope = await event_bus.requeue(db, hotel_id, event_id)
        await db.commit()
    except CoreError as e:
        await db.rollback()
        raise_core(e)
    return _envelope_dict(envelope)


# ─── Alerts ───


@router.get("/{hotel_id}/alerts")
async def list_alerts(
    hotel_id: str,
    include_acknowledged: bool = False,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    alerts = await alert_service.list_alerts(db, hotel_id, not include_acknowledged, limit)
    return {"alerts": [_alert_dict(a) for a in alerts], "count": len(alerts)}


@router.post("/{hotel_id}/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(hotel_id: str, alert_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    try:
        alert = await alert_service.acknowledge(db, hotel_id, alert_id)
    except CoreError as e:
        raise_core(e)
    return _alert_dict(alert)


# ─── Reconciliation ───


@router.get("/{hotel_id}/reconciliation")
async def list_reconciliation(
    hotel_id: str,
    unresolved_only: bool = False,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    records = await reconciler.list_records(db, hotel_id, unresolved_only, limit)
    return {"records": [_record_dict(r) for r in records], "count": len(records)}


@router.post("/{hotel_id}/reconciliation/{record_id}/resolve")
async def resolve_reconciliation(
    hotel_id: str, record_id: uuid.UUID, req: ResolveRequest, db: AsyncSession = Depends(get_db)
):
    try:
        record = await reconciler.resolve(db, hotel_id, record_id, req.notes)
    except CoreError as e:
        raise_core(e)
    return _record_dict(record)
