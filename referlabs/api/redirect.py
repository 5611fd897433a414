"""
Ambassador link intake: /api/referral-redirect?code=&ambassador_id=&business_id=

Flow:
  1. Rate limit per client IP
  2. Missing any of code / ambassador_id / business_id → straight to the
     referral program page, no cookie
  3. Log link_visit (best-effort; a failed insert never blocks the redirect)
  4. Set the signed ref_ambassador cookie (30-day window)
  5. 302 → "/" for destination=client, else /our-referral-program
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from referlabs.core.attribution import issue_attribution_cookie, set_attribution_cookie
from referlabs.core.referral_events import (
    ReferralEventType,
    infer_device_from_user_agent,
    log_referral_event,
)
from referlabs.middleware.rate_limit import check_rate_limit
from referlabs.models.database import get_db

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["attribution"])

PROGRAM_PATH = "/our-referral-program"
CLIENT_PATH = "/"


@router.get("/referral-redirect")
async def referral_redirect(request: Request, db: AsyncSession = Depends(get_db)):
    await check_rate_limit(request, "general")

    params = request.query_params
    code = params.get("code")
    ambassador_id = params.get("ambassador_id")
    business_id = params.get("business_id")

    if not code or not ambassador_id or not business_id:
        return RedirectResponse(url=PROGRAM_PATH, status_code=302)

    destination = CLIENT_PATH if params.get("destination") == "client" else PROGRAM_PATH
    source_param = params.get("utm_source") or params.get("source")

    await log_referral_event(
        db,
        business_id=business_id,
        ambassador_id=ambassador_id,
        event_type=ReferralEventType.LINK_VISIT,
        source=params.get("utm_campaign") or source_param or "direct",
        device=infer_device_from_user_agent(request.headers.get("user-agent")),
        metadata={
            "referrer": request.headers.get("referer"),
            "query": dict(params),
            "redirect_destination": "client" if destination == CLIENT_PATH else "partner_program",
        },
    )

    response = RedirectResponse(url=destination, status_code=302)
    cookie = issue_attribution_cookie(ambassador_id, code, business_id, source_param)
    set_attribution_cookie(response, cookie)

    logger.info("referral_redirect", business_id=business_id, ambassador_id=ambassador_id,
                destination=destination)
    return response
