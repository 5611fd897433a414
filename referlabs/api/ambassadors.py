"""
Ambassador self-service export: GET|POST /api/ambassadors/export

Auth is the short-lived ambassador token minted for the portal, not a
Supabase session. Token failure reasons are logged, never returned.
"""

import json

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from referlabs.core.ambassador_token import verify_ambassador_token
from referlabs.middleware.rate_limit import check_rate_limit_for_identifier
from referlabs.models.database import get_db
from referlabs.models.tables import Customer, Referral

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/api/ambassadors", tags=["ambassadors"])


def _serialize_referral(r: Referral) -> dict:
    return {
        "id": r.id,
        "referred_name": r.referred_name,
        "referred_email": r.referred_email,
        "referred_phone": r.referred_phone,
        "status": r.status,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "consent_given": r.consent_given,
        "locale": r.locale,
    }


async def _export(db: AsyncSession, code: str | None, token: str | None) -> dict:
    if not code:
        raise HTTPException(status_code=400, detail="referral code is required")

    check = verify_ambassador_token(token, code)
    if not check.valid:
        logger.info("ambassador_token_rejected", reason=check.reason)
        raise HTTPException(status_code=401, detail="Unauthorized")

    await check_rate_limit_for_identifier(code, "ambassador_code")

    result = await db.execute(
        select(Customer)
        .options(selectinload(Customer.business))
        .where(Customer.referral_code == code)
    )
    ambassador = result.scalars().first()
    if not ambassador:
        raise HTTPException(status_code=404, detail="Ambassador not found")

    result = await db.execute(
        select(Referral)
        .where(Referral.ambassador_id == ambassador.id)
        .order_by(Referral.created_at.desc())
    )
    referrals = result.scalars().all()

    return {
        "ambassador": {
            "id": ambassador.id,
            "name": ambassador.name,
            "email": ambassador.email,
            "phone": ambassador.phone,
            "referral_code": ambassador.referral_code,
            "credits": ambassador.credits,
            "business": {"name": ambassador.business.name} if ambassador.business else None,
        },
        "referrals": [_serialize_referral(r) for r in referrals],
    }


@router.get("/export")
async def export_get(request: Request, db: AsyncSession = Depends(get_db)):
    return await _export(db, request.query_params.get("code"), request.query_params.get("token"))


@router.post("/export")
async def export_post(request: Request, db: AsyncSession = Depends(get_db)):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = body.get("code") if isinstance(body.get("code"), str) else None
    token = body.get("token") if isinstance(body.get("token"), str) else None
    return await _export(db, code, token)
