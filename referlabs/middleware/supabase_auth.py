"""
Supabase authentication for business-owner routes.
Validates access tokens server-side by calling Supabase /auth/v1/user.

Also holds the static bearer check shared by the cron dispatch endpoint
and the provider webhooks.
"""

from dataclasses import dataclass

import httpx
from fastapi import HTTPException, Request

from referlabs.config import get_settings
from referlabs.core.signing import secure_compare

import structlog

logger = structlog.get_logger()


@dataclass
class OwnerContext:
    user_id: str
    email: str


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


async def _validate_supabase_token(token: str) -> dict:
    """Call Supabase /auth/v1/user to validate the Bearer token server-side."""
    settings = get_settings()
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(
                f"{settings.supabase_url}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": settings.supabase_anon_key,
                },
            )
    except httpx.HTTPError as exc:
        logger.warning("supabase_auth_unreachable", error=str(exc))
        raise HTTPException(status_code=401, detail="Unauthorized")
    if resp.status_code != 200:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return resp.json()


async def require_owner(request: Request) -> OwnerContext:
    """FastAPI dependency: resolves the signed-in business owner or raises 401."""
    token = _bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")

    user = await _validate_supabase_token(token)
    if not user.get("id"):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return OwnerContext(user_id=str(user["id"]), email=user.get("email") or "")


def verify_bearer(header: str | None, secret: str) -> bool:
    if not header or not header.startswith("Bearer "):
        return False
    try:
        return secure_compare(header[7:].strip(), secret)
    except UnicodeEncodeError:
        return False


def require_bearer_secret(request: Request, secret: str, *, name: str) -> None:
    """Static shared-secret check. 500 when the secret is unset, 401 on mismatch."""
    if not secret:
        logger.error("bearer_secret_not_configured", secret=name)
        raise HTTPException(status_code=500, detail=f"{name} not configured")
    if not verify_bearer(request.headers.get("Authorization"), secret):
        raise HTTPException(status_code=401, detail="Unauthorized")
