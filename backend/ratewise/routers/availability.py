"""Availability router: range reads, range seeding and bulk updates."""

import logging
import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.database import get_db
from ratewise.dependencies import rate_limit, raise_core, unwrap
from ratewise.schemas.availability import AvailabilityRangeCreate, BulkAvailabilityRequest
from ratewise.services.availability_store import availability_store, snapshot
from ratewise.services.batch_writer import batch_writer
from ratewise.services.results import CoreError

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(rate_limit)])


@router.get("/{hotel_id}/availability")
async def get_availability(
    hotel_id: str,
    start: date,
    end: date,
    room_type_id: uuid.UUID | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Rows for the inclusive range [start, end]; missing nights are simply absent."""
    if end < start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    rows = await availability_store.list_range(db, hotel_id, start, end, room_type_id)
    return {"hotel_id": hotel_id, "rows": [snapshot(r) for r in rows], "count": len(rows)}


@router.post("/{hotel_id}/availability/range", status_code=201)
async def create_availability_range(
    hotel_id: str, req: AvailabilityRangeCreate, db: AsyncSession = Depends(get_db)
):
    return unwrap(await batch_writer.create_availability_range(db, hotel_id, req))


@router.post("/{hotel_id}/availability/bulk")
async def bulk_update_availability(hotel_id: str, req: BulkAvailabilityRequest):
    try:
        result = await batch_writer.bulk_update_availability(hotel_id, req.updates)
    except CoreError as e:
        raise_core(e)
    return result.to_dict()
