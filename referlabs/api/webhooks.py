"""
Delivery status callbacks from the SMS and email providers.

Both are authenticated with a static bearer token configured on the provider
side. Statuses for messages we don't know about are acknowledged and dropped.
"""

import json
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referlabs.config import get_settings
from referlabs.core.referral_events import ReferralEventType, log_referral_event
from referlabs.middleware.supabase_auth import require_bearer_secret
from referlabs.models.database import get_db
from referlabs.models.tables import CampaignMessage

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _find_message(db: AsyncSession, provider_message_id: str) -> CampaignMessage | None:
    result = await db.execute(
        select(CampaignMessage).where(CampaignMessage.provider_message_id == provider_message_id)
    )
    return result.scalars().first()


async def _mark_delivered(db: AsyncSession, message: CampaignMessage,
                          provider_message_id: str, channel: str):
    message.status = "delivered"
    message.delivered_at = datetime.now(timezone.utc)
    business_id, customer_id = message.business_id, message.customer_id
    metadata = {
        "campaign_id": message.campaign_id,
        "campaign_message_id": message.id,
        "provider_message_id": provider_message_id,
        "channel": channel,
    }
    await db.commit()

    await log_referral_event(
        db,
        business_id=business_id,
        ambassador_id=customer_id,
        event_type=ReferralEventType.CAMPAIGN_MESSAGE_DELIVERED,
        metadata=metadata,
    )


async def _mark_failed(db: AsyncSession, message: CampaignMessage,
                       provider_message_id: str, channel: str, reason: str):
    message.status = "failed"
    message.error = reason
    business_id, customer_id = message.business_id, message.customer_id
    metadata = {
        "campaign_id": message.campaign_id,
        "campaign_message_id": message.id,
        "provider_message_id": provider_message_id,
        "reason": reason,
        "channel": channel,
    }
    await db.commit()

    await log_referral_event(
        db,
        business_id=business_id,
        ambassador_id=customer_id,
        event_type=ReferralEventType.CAMPAIGN_MESSAGE_FAILED,
        metadata=metadata,
    )


@router.post("/twilio")
async def twilio_status(request: Request, db: AsyncSession = Depends(get_db)):
    require_bearer_secret(request, get_settings().twilio_webhook_token,
                          name="TWILIO_WEBHOOK_TOKEN")

    form = await request.form()
    params = {k: v for k, v in form.items() if isinstance(v, str)}

    message_sid = params.get("MessageSid")
    if not message_sid:
        raise HTTPException(status_code=400, detail="Missing MessageSid")

    message = await _find_message(db, message_sid)
    if not message:
        return {"ok": True}
    message_id = message.id

    status = (params.get("MessageStatus") or params.get("SmsStatus") or "").lower()
    if status == "delivered":
        await _mark_delivered(db, message, message_sid, "sms")
    elif status in ("failed", "undelivered"):
        reason = params.get("ErrorMessage") or params.get("ErrorCode") or "delivery_failed"
        await _mark_failed(db, message, message_sid, "sms", reason)

    logger.info("twilio_status_received", message_id=message_id, status=status)
    return {"ok": True}


@router.post("/resend")
async def resend_status(request: Request, db: AsyncSession = Depends(get_db)):
    require_bearer_secret(request, get_settings().resend_webhook_token,
                          name="RESEND_WEBHOOK_TOKEN")

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("resend_webhook_invalid_json")
        raise HTTPException(status_code=400, detail="Invalid JSON")

    data = payload.get("data") if isinstance(payload, dict) else None
    email_id = data.get("email_id") if isinstance(data, dict) else None
    if not email_id or not isinstance(email_id, str):
        raise HTTPException(status_code=400, detail="Missing email_id")

    message = await _find_message(db, email_id)
    if not message:
        return {"ok": True}
    message_id = message.id

    event_type = payload.get("type")
    if event_type == "email.delivered":
        await _mark_delivered(db, message, email_id, "email")
    elif event_type in ("email.bounced", "email.complained"):
        reason = data.get("reason")
        await _mark_failed(db, message, email_id, "email", str(reason) if reason else event_type)

    logger.info("resend_status_received", message_id=message_id, type=event_type)
    return {"ok": True}
