"""
Conversion beacons and the owner's referral event feed.

  POST /api/track-conversion  high-intent clicks from the partner page
  GET  /api/referral-events   newest 100 events for the owner's business
"""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referlabs.core.attribution import COOKIE_NAME, read_attribution
from referlabs.core.referral_events import (
    ReferralEventType,
    infer_device_from_user_agent,
    list_recent_events,
    log_referral_event,
)
from referlabs.middleware.rate_limit import check_rate_limit
from referlabs.middleware.supabase_auth import OwnerContext, require_owner
from referlabs.models.database import get_db
from referlabs.models.tables import Business, Referral

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["conversions"])


class ConversionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_type: Literal["schedule_call_clicked", "contact_us_clicked"] = Field(alias="eventType")
    ambassador_id: str | None = Field(default=None, alias="ambassadorId")
    business_id: str | None = Field(default=None, alias="businessId")
    referral_code: str | None = Field(default=None, alias="referralCode")
    metadata: dict | None = None


async def _create_pending_referral(db: AsyncSession, payload: ConversionPayload,
                                   business_id: str, ambassador_id: str, referral_code: str | None):
    try:
        db.add(Referral(
            business_id=business_id,
            ambassador_id=ambassador_id,
            referred_name="Calendly Lead",
            status="pending",
            consent_given=False,
            locale="en",
            metadata_={
                "source": "schedule_call",
                "referral_code": referral_code,
                "event_type": payload.event_type,
            },
        ))
        await db.commit()
    except Exception as exc:
        logger.error("pending_referral_create_failed", business_id=business_id, error=str(exc))
        await db.rollback()


@router.post("/track-conversion")
async def track_conversion(
    payload: ConversionPayload,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    await check_rate_limit(request, "track_conversion")

    ambassador_id = payload.ambassador_id
    business_id = payload.business_id
    referral_code = payload.referral_code

    # Fall back to the visitor's attribution cookie
    if not ambassador_id or not business_id:
        status = read_attribution(request.cookies.get(COOKIE_NAME))
        if status.has_attribution and status.cookie:
            ambassador_id = ambassador_id or status.cookie.id
            business_id = business_id or status.cookie.business_id
            referral_code = referral_code or status.cookie.code

    if not ambassador_id or not business_id:
        raise HTTPException(status_code=400, detail="Missing required fields")

    tracked = await log_referral_event(
        db,
        business_id=business_id,
        ambassador_id=ambassador_id,
        event_type=ReferralEventType(payload.event_type),
        source="website",
        device=infer_device_from_user_agent(request.headers.get("user-agent")),
        metadata={
            "referral_code": referral_code,
            "url": request.headers.get("referer"),
            **(payload.metadata or {}),
        },
    )

    if payload.event_type == "schedule_call_clicked":
        await _create_pending_referral(db, payload, business_id, ambassador_id, referral_code)

    return {"success": True, "eventType": payload.event_type, "tracked": tracked}


@router.get("/referral-events")
async def referral_events(
    owner: OwnerContext = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(Business.id).where(Business.owner_id == owner.user_id))
    business_id = result.scalars().first()
    if not business_id:
        return {"events": [], "latestEventAt": None}

    events = await list_recent_events(db, business_id, limit=100)
    return {
        "events": [
            {
                "id": e.id,
                "event_type": e.event_type,
                "source": e.source,
                "device": e.device,
                "created_at": e.created_at.isoformat() if e.created_at else None,
                "metadata": e.metadata_,
                "referral_id": e.referral_id,
                "ambassador_id": e.ambassador_id,
            }
            for e in events
        ],
        "latestEventAt": events[0].created_at.isoformat() if events and events[0].created_at else None,
    }
