"""
Campaign dispatch batch runner.

One invocation processes a bounded slice of the outbound queue:
  1. Load queued, due messages (oldest first, 2x batch so exhausted rows
     don't starve the batch)
  2. Fail rows that already used up their attempts
  3. Claim each remaining row with a conditional update
     (status='queued' → 'sending'); a zero rowcount means another
     invocation owns it, so it is skipped, never sent twice
  4. Send through the row's channel; one failure never aborts the batch
  5. Record sent/failed per row, bump campaign counters, log events
  6. Close out campaigns with nothing left in flight

No retry loop lives here. Re-sending is left to the next scheduled invocation.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from referlabs.config import get_settings
from referlabs.core.channels import ChannelNotConfigured, QueuedMessage, default_channels
from referlabs.core.referral_events import ReferralEventType, log_referral_event
from referlabs.models.database import get_session_maker
from referlabs.models.tables import Campaign, CampaignMessage

import structlog

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 25
MAX_BATCH_SIZE = 100


@dataclass
class DispatchOptions:
    batch_size: int = DEFAULT_BATCH_SIZE
    restrict_campaign_id: str | None = None
    skip_batch_events: bool = False


@dataclass
class DispatchBatchResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    error: str | None = None
    sent_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        body = asdict(self)
        body.pop("sent_ids")
        if body["error"] is None:
            body.pop("error")
        return body


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _claim(db: AsyncSession, message: QueuedMessage) -> bool:
    """queued → sending, exclusive across concurrent invocations."""
    result = await db.execute(
        update(CampaignMessage)
        .where(CampaignMessage.id == message.id, CampaignMessage.status == "queued")
        .values(
            status="sending",
            attempts=CampaignMessage.attempts + 1,
            last_attempt_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Nothing written; close the transaction so the write lock is released.
        await db.commit()
        return False

    await db.execute(
        update(Campaign)
        .where(Campaign.id == message.campaign_id, Campaign.status == "queued")
        .values(status="sending")
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return True


async def _record_outcome(
    db: AsyncSession,
    message: QueuedMessage,
    status: str,
    *,
    error: str | None = None,
    provider_message_id: str | None = None,
    expected_status: str = "sending",
) -> bool:
    if provider_message_id is not None:
        provider_message_id = str(provider_message_id)
    values = {"status": status, "error": error}
    if status == "sent":
        values.update(provider_message_id=provider_message_id, sent_at=_now())

    result = await db.execute(
        update(CampaignMessage)
        .where(CampaignMessage.id == message.id, CampaignMessage.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Nothing written; close the transaction so the write lock is released.
        await db.commit()
        return False

    sent_delta, failed_delta = (1, 0) if status == "sent" else (0, 1)
    await db.execute(
        update(Campaign)
        .where(Campaign.id == message.campaign_id)
        .values(
            sent_count=Campaign.sent_count + sent_delta,
            failed_count=Campaign.failed_count + failed_delta,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    event_metadata = {
        "campaign_id": message.campaign_id,
        "campaign_message_id": message.id,
        "channel": message.channel,
    }
    if status == "sent":
        event_metadata["provider_message_id"] = provider_message_id
        event_type = ReferralEventType.CAMPAIGN_MESSAGE_SENT
    else:
        event_metadata["reason"] = error
        event_type = ReferralEventType.CAMPAIGN_MESSAGE_FAILED

    await log_referral_event(
        db,
        business_id=message.business_id,
        ambassador_id=message.customer_id,
        event_type=event_type,
        metadata=event_metadata,
    )
    return True


async def _dispatch_message(db: AsyncSession, message: QueuedMessage, channels: dict) -> str:
    """Send one claimed message. Returns "sent" or "failed"."""
    if not message.to_address or not message.message_body:
        await _record_outcome(db, message, "failed",
                              error="Missing destination address or message body")
        return "failed"

    channel = channels.get(message.channel)
    if channel is None:
        await _record_outcome(db, message, "failed",
                              error=f"Unsupported channel: {message.channel}")
        return "failed"

    try:
        provider_message_id = await channel.send(message)
    except ChannelNotConfigured as exc:
        logger.warning("dispatch_channel_not_configured",
                       channel=message.channel, message_id=message.id)
        await _record_outcome(db, message, "failed", error=str(exc))
        return "failed"
    except Exception as exc:
        logger.error("dispatch_send_failed",
                     channel=message.channel, message_id=message.id, error=str(exc))
        await _record_outcome(db, message, "failed", error=str(exc) or exc.__class__.__name__)
        return "failed"

    await _record_outcome(db, message, "sent", provider_message_id=provider_message_id)
    return "sent"


async def _fail_claimed_message(db: AsyncSession, message: QueuedMessage, error: str) -> bool:
    """Best-effort sending → failed after an error mid-processing."""
    try:
        await db.rollback()
        return await _record_outcome(db, message, "failed", error=error)
    except Exception as exc:
        logger.error("dispatch_mark_failed_error", message_id=message.id, error=str(exc))
        return False


async def _finalize_campaigns(db: AsyncSession, campaign_ids: set[str]) -> None:
    for campaign_id in campaign_ids:
        in_flight = await db.execute(
            select(func.count(CampaignMessage.id)).where(
                CampaignMessage.campaign_id == campaign_id,
                CampaignMessage.status.in_(["queued", "sending"]),
            )
        )
        if in_flight.scalar_one() > 0:
            continue

        failures = await db.execute(
            select(func.count(CampaignMessage.id)).where(
                CampaignMessage.campaign_id == campaign_id,
                CampaignMessage.status == "failed",
            )
        )
        status = "partial" if failures.scalar_one() > 0 else "completed"
        await db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info("campaign_finalized", campaign_id=campaign_id, status=status)


async def _load_queue(db: AsyncSession, options: DispatchOptions, limit: int) -> list[QueuedMessage]:
    stmt = (
        select(CampaignMessage)
        .options(selectinload(CampaignMessage.campaign), selectinload(CampaignMessage.business))
        .where(
            CampaignMessage.status == "queued",
            or_(CampaignMessage.scheduled_at.is_(None), CampaignMessage.scheduled_at <= _now()),
        )
        .order_by(CampaignMessage.created_at.asc())
        .limit(limit)
    )
    if options.restrict_campaign_id:
        stmt = stmt.where(CampaignMessage.campaign_id == options.restrict_campaign_id)
    result = await db.execute(stmt)
    return [QueuedMessage.from_row(row) for row in result.scalars().all()]


async def run_campaign_dispatch_batch(
    options: DispatchOptions | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    channels: dict | None = None,
) -> DispatchBatchResult:
    """Process one bounded batch of the outbound queue. Never raises."""
    options = options or DispatchOptions()
    batch_size = max(1, min(int(options.batch_size or DEFAULT_BATCH_SIZE), MAX_BATCH_SIZE))
    max_attempts = get_settings().campaign_max_attempts
    session_factory = session_factory or get_session_maker()
    channels = channels if channels is not None else default_channels()

    try:
        async with session_factory() as db:
            try:
                queue = await _load_queue(db, options, batch_size * 2)
            except Exception as exc:
                logger.error("dispatch_queue_load_failed", error=str(exc))
                return DispatchBatchResult(error="Failed to load queued messages.")

            if not queue:
                return DispatchBatchResult()

            result = DispatchBatchResult()
            touched_campaigns: set[str] = set()

            # Exhausted rows are failed so they stop clogging the queue.
            exhausted = [m for m in queue if m.attempts >= max_attempts]
            for message in exhausted:
                if not await _claim(db, message):
                    continue
                touched_campaigns.add(message.campaign_id)
                recorded = await _record_outcome(
                    db, message, "failed",
                    error=f"Max send attempts reached ({max_attempts}).",
                )
                if recorded:
                    result.failed += 1

            batch = [m for m in queue if m.attempts < max_attempts][:batch_size]
            if not batch:
                await _finalize_campaigns(db, touched_campaigns)
                return result

            batch_business_id = batch[0].business_id
            if not options.skip_batch_events:
                await log_referral_event(
                    db,
                    business_id=batch_business_id,
                    ambassador_id=None,
                    event_type=ReferralEventType.CAMPAIGN_DELIVERY_BATCH_STARTED,
                    metadata={"batch_size": len(batch)},
                )

            sent = failed = 0
            for message in batch:
                claimed = False
                try:
                    if not await _claim(db, message):
                        result.skipped += 1
                        continue
                    claimed = True
                    result.processed += 1
                    touched_campaigns.add(message.campaign_id)
                    outcome = await _dispatch_message(db, message, channels)
                except Exception as exc:
                    logger.error("dispatch_message_error", message_id=message.id, error=str(exc))
                    if not claimed:
                        await db.rollback()
                        continue
                    await _fail_claimed_message(
                        db, message, f"Dispatch error: {exc or exc.__class__.__name__}",
                    )
                    outcome = "failed"

                if outcome == "sent":
                    sent += 1
                    result.sent_ids.append(message.id)
                else:
                    failed += 1

            result.sent += sent
            result.failed += failed

            await _finalize_campaigns(db, touched_campaigns)

            if not options.skip_batch_events:
                await log_referral_event(
                    db,
                    business_id=batch_business_id,
                    ambassador_id=None,
                    event_type=ReferralEventType.CAMPAIGN_DELIVERY_BATCH_FINISHED,
                    metadata={"processed": result.processed, "sent": sent, "failed": failed},
                )

            logger.info("dispatch_batch_finished",
                        campaign_id=options.restrict_campaign_id,
                        processed=result.processed,
                        sent=result.sent,
                        failed=result.failed,
                        skipped=result.skipped)
            return result
    except Exception as exc:
        logger.error("dispatch_batch_error", error=str(exc))
        return DispatchBatchResult(error="Campaign dispatch failed.")
