"""Channels router: channel configuration, credentials, explicit pushes, parity and inbound callbacks."""

import logging
import uuid
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.database import get_db
from ratewise.dependencies import rate_limit, raise_core, unwrap
from ratewise.models.channels import ChannelConfig
from ratewise.schemas.channels import ChannelConfigUpsert, CredentialRotate, DistributeRatesRequest
from ratewise.schemas.inbound import ChannelEventIn
from ratewise.services.channel_registry import channel_registry
from ratewise.services.channels import get_adapter
from ratewise.services.channels.base import SignedJsonMixin
from ratewise.services.distributor import distributor
from ratewise.services.reconciler import reconciler
from ratewise.services.results import CoreError

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(rate_limit)])


def _channel_dict(config: ChannelConfig) -> dict:
    """Public view of a channel config; credentials are never echoed."""
    return {
        "channel_id": config.channel_id,
        "channel_name": config.channel_name,
        "adapter": config.adapter,
        "active": config.active,
        "endpoints": config.endpoints or {},
        "supported_currencies": config.supported_currencies or [],
        "sync_flags": config.sync_flags or [],
        "timeout_ms": config.timeout_ms,
        "max_concurrency": config.max_concurrency,
        "connection_status": config.connection_status,
        "credential_status": config.credential_status,
        "credential_version": config.credential_version,
        "credential_expires_at": config.credential_expires_at.isoformat() if config.credential_expires_at else None,
        "has_backup_credentials": bool(config.backup_credentials),
    }


# ─── Configuration ───


@router.put("/{hotel_id}/channels")
async def upsert_channel(hotel_id: str, req: ChannelConfigUpsert, db: AsyncSession = Depends(get_db)):
    try:
        config = await channel_registry.upsert(db, hotel_id, req)
        await db.commit()
    except CoreError as e:
        await db.rollback()
        raise_core(e)
    return _channel_dict(config)


@router.get("/{hotel_id}/channels")
async def list_channels(hotel_id: str, db: AsyncSession = Depends(get_db)):
    configs = await channel_registry.list_channels(db, hotel_id)
    return {"channels": [_channel_dict(c) for c in configs], "count": len(configs)}


@router.get("/{hotel_id}/channels/status")
async def distribution_status(hotel_id: str, db: AsyncSession = Depends(get_db)):
    return await channel_registry.distribution_status(db, hotel_id)


@router.post("/{hotel_id}/channels/{channel_id}/credentials/rotate")
async def rotate_credential(
    hotel_id: str, channel_id: str, req: CredentialRotate, db: AsyncSession = Depends(get_db)
):
    try:
        config = await channel_registry.rotate_credential(db, hotel_id, channel_id, req)
        await db.commit()
    except CoreError as e:
        await db.rollback()
        raise_core(e)
    return _channel_dict(config)


@router.post("/{hotel_id}/channels/{channel_id}/credentials/revoke")
async def revoke_credential(hotel_id: str, channel_id: str, db: AsyncSession = Depends(get_db)):
    try:
        config = await channel_registry.revoke_credential(db, hotel_id, channel_id)
        await db.commit()
    except CoreError as e:
        await db.rollback()
        raise_core(e)
    return _channel_dict(config)


@router.post("/{hotel_id}/channels/probe")
async def probe_channels(hotel_id: str, db: AsyncSession = Depends(get_db)):
    results = await distributor.probe_unhealthy(db, hotel_id)
    return {"probed": len(results), "results": results}


# ─── Distribution ───


@router.post("/{hotel_id}/distribute/rates", status_code=202)
async def distribute_rates(hotel_id: str, req: DistributeRatesRequest, db: AsyncSession = Depends(get_db)):
    try:
        envelope = await distributor.distribute_rates(db, hotel_id, req)
    except CoreError as e:
        await db.rollback()
        raise_core(e)
    return {"event_id": str(envelope.id), "status": envelope.status, "priority": envelope.priority}


@router.get("/{hotel_id}/parity")
async def rate_parity(
    hotel_id: str,
    room_type_id: uuid.UUID,
    start: date,
    end: date,
    allowed_variance_pct: Decimal = Decimal("0"),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await distributor.rate_parity(db, hotel_id, room_type_id, start, end, allowed_variance_pct)
    except CoreError as e:
        raise_core(e)


# ─── Inbound ───


@router.post("/{hotel_id}/channels/{channel_id}/inbound")
async def channel_inbound(
    hotel_id: str,
    channel_id: str,
    request: Request,
    x_signature: str | None = Header(default=None),
    x_timestamp: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Booking, modification and cancellation callbacks from a channel."""
    try:
        view = await channel_registry.get(db, hotel_id, channel_id)
    except CoreError as e:
        raise_core(e)

    adapter = get_adapter(view.adapter)
    content = await request.body()
    secret = (view.credentials or {}).get("hmac_secret")
    if isinstance(adapter, SignedJsonMixin) and secret:
        if not x_signature or not x_timestamp or not adapter.verify(secret, content, x_timestamp, x_signature):
            logger.warning(f"Rejected unsigned callback from {hotel_id}/{channel_id}")
            raise HTTPException(status_code=401, detail="Invalid callback signature")

    try:
        raw = await request.json()
        event = ChannelEventIn.model_validate({**adapter.parse_inbound(raw), "channel": channel_id})
    except (ValueError, KeyError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=f"Unreadable callback: {e}")

    return unwrap(await reconciler.on_channel_event(db, hotel_id, event))
