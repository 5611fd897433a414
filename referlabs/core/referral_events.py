"""
Referral event log: append-only facts for audit/analytics.

Logging is best-effort observability: a failed insert is logged at warning
level and reported as False, never raised. The business action that triggered
the event (redirect, conversion, dispatch) must not fail because of it.
"""

from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referlabs.models.tables import ReferralEvent

import structlog

logger = structlog.get_logger()


class ReferralEventType(str, Enum):
    LINK_VISIT = "link_visit"
    SIGNUP_SUBMITTED = "signup_submitted"
    CONVERSION_PENDING = "conversion_pending"
    CONVERSION_COMPLETED = "conversion_completed"
    MANUAL_CONVERSION_RECORDED = "manual_conversion_recorded"
    PAYOUT_RELEASED = "payout_released"
    PAYOUT_ADJUSTED = "payout_adjusted"
    CAMPAIGN_MESSAGE_QUEUED = "campaign_message_queued"
    CAMPAIGN_MESSAGE_SENT = "campaign_message_sent"
    CAMPAIGN_MESSAGE_DELIVERED = "campaign_message_delivered"
    CAMPAIGN_MESSAGE_FAILED = "campaign_message_failed"
    CAMPAIGN_DELIVERY_BATCH_STARTED = "campaign_delivery_batch_started"
    CAMPAIGN_DELIVERY_BATCH_FINISHED = "campaign_delivery_batch_finished"
    SCHEDULE_CALL_CLICKED = "schedule_call_clicked"
    CONTACT_US_CLICKED = "contact_us_clicked"


async def log_referral_event(
    db: AsyncSession,
    *,
    business_id: str | None,
    ambassador_id: str | None,
    event_type: ReferralEventType | str,
    referral_id: str | None = None,
    source: str | None = None,
    device: str | None = None,
    metadata: dict | None = None,
) -> bool:
    """Insert one referral_events row. Returns False (never raises) on failure."""
    try:
        event_type = ReferralEventType(event_type)
        if not business_id:
            raise ValueError("referral events require a business_id")

        db.add(ReferralEvent(
            business_id=business_id,
            ambassador_id=ambassador_id,
            referral_id=referral_id,
            event_type=event_type.value,
            source=source,
            device=device,
            metadata_=metadata,
        ))
        await db.commit()
        return True
    except Exception as exc:
        logger.warning("referral_event_log_failed",
                       event_type=str(event_type),
                       business_id=business_id,
                       error=str(exc))
        try:
            await db.rollback()
        except Exception as rollback_exc:
            logger.warning("referral_event_rollback_failed", error=str(rollback_exc))
        return False


def infer_device_from_user_agent(user_agent: str | None) -> str:
    if not user_agent:
        return "unknown"
    normalized = user_agent.lower()
    if any(token in normalized for token in ("mobile", "iphone", "android", "ipad")):
        return "mobile"
    if "tablet" in normalized:
        return "tablet"
    return "desktop"


async def list_recent_events(db: AsyncSession, business_id: str, limit: int = 100) -> list[ReferralEvent]:
    stmt = (
        select(ReferralEvent)
        .where(ReferralEvent.business_id == business_id)
        .order_by(ReferralEvent.created_at.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
