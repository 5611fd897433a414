"""
Campaign dispatch entry points.

  POST /api/campaign-messages/dispatch-owner  owner "send now" for one campaign
  POST /api/campaign-messages/dispatch        scheduler (static bearer token)
  POST /api/campaign-messages/preflight       probe a campaign's referral links
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referlabs.config import get_settings
from referlabs.core.dispatch import DispatchOptions, run_campaign_dispatch_batch
from referlabs.core.link_preflight import verify_urls_are_reachable
from referlabs.middleware.rate_limit import check_rate_limit
from referlabs.middleware.supabase_auth import OwnerContext, require_bearer_secret, require_owner
from referlabs.models.database import get_db
from referlabs.models.tables import Business, Campaign, CampaignMessage

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/campaign-messages", tags=["dispatch"])


class OwnerDispatchPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    campaign_id: str = Field(alias="campaignId", min_length=1)
    batch_size: int | None = Field(default=None, alias="batchSize", ge=1, le=100)


class PreflightPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    campaign_id: str = Field(alias="campaignId", min_length=1)


async def _owned_campaign(db: AsyncSession, campaign_id: str, owner: OwnerContext) -> Campaign:
    result = await db.execute(select(Campaign).where(Campaign.id == campaign_id))
    campaign = result.scalar_one_or_none()
    if not campaign:
        logger.warning("campaign_not_found_for_owner", campaign_id=campaign_id)
        raise HTTPException(status_code=404, detail="Campaign not found.")

    result = await db.execute(
        select(Business.id).where(
            Business.id == campaign.business_id,
            Business.owner_id == owner.user_id,
        )
    )
    if result.scalar_one_or_none() is None:
        logger.warning("campaign_ownership_check_failed", campaign_id=campaign_id)
        raise HTTPException(status_code=401, detail="Unauthorized")
    return campaign


@router.post("/dispatch-owner")
async def dispatch_owner(
    payload: OwnerDispatchPayload,
    request: Request,
    owner: OwnerContext = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
):
    await check_rate_limit(request, "campaign_send")
    await _owned_campaign(db, payload.campaign_id, owner)

    result = await run_campaign_dispatch_batch(DispatchOptions(
        batch_size=payload.batch_size or get_settings().campaign_dispatch_batch,
        restrict_campaign_id=payload.campaign_id,
        skip_batch_events=True,
    ))
    if result.error:
        logger.error("owner_dispatch_failed", campaign_id=payload.campaign_id, error=result.error)
        raise HTTPException(status_code=500, detail=result.error)
    return result.to_dict()


@router.post("/dispatch")
async def dispatch_scheduled(request: Request):
    settings = get_settings()
    require_bearer_secret(request, settings.campaign_dispatch_token,
                          name="CAMPAIGN_DISPATCH_TOKEN")

    result = await run_campaign_dispatch_batch(
        DispatchOptions(batch_size=settings.campaign_dispatch_batch)
    )
    if result.error:
        raise HTTPException(status_code=500, detail=result.error)
    return result.to_dict()


@router.post("/preflight")
async def preflight(
    payload: PreflightPayload,
    owner: OwnerContext = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
):
    await _owned_campaign(db, payload.campaign_id, owner)

    result = await db.execute(
        select(CampaignMessage.referral_link)
        .where(
            CampaignMessage.campaign_id == payload.campaign_id,
            CampaignMessage.status == "queued",
        )
        .distinct()
    )
    urls = list(result.scalars().all())

    ok, failures = await verify_urls_are_reachable(urls)
    return {
        "ok": ok,
        "checked": len([u for u in urls if u]),
        "failures": [{"url": f.url, "status": f.status, "error": f.error} for f in failures],
    }
