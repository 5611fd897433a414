"""Attribution status for the current visitor: /api/verify-attribution"""

from fastapi import APIRouter, Request

from referlabs.core.attribution import COOKIE_NAME, read_attribution

router = APIRouter(prefix="/api", tags=["attribution"])


@router.get("/verify-attribution")
async def verify_attribution(request: Request):
    status = read_attribution(request.cookies.get(COOKIE_NAME))
    return status.to_response()
