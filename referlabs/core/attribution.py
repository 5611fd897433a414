"""
Referral attribution cookie (ref_ambassador).

Cookie value:  {base64url(json)}.{base64url(hmac_sig)}
- json     → {"id", "code", "business_id", "timestamp" (epoch ms), "source"}
- hmac_sig → HMAC-SHA256 over the json segment, so a visitor cannot forge
             which ambassador or business gets credited

The window is fixed from `timestamp` (30 days by default). Readers treat an
expired, unsigned, or unparseable cookie as "no attribution", never an error.
"""

import json
import time
from dataclasses import asdict, dataclass
from typing import Literal

from starlette.responses import Response

from referlabs.config import get_settings
from referlabs.core.signing import (
    b64url_decode,
    b64url_encode,
    resolve_signing_secret,
    secure_compare,
    sign,
)

COOKIE_NAME = "ref_ambassador"
COOKIE_MAX_AGE = 30 * 24 * 60 * 60  # 30 days, in seconds

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

AttributionFailure = Literal["no_cookie", "expired", "parse_error", "invalid_signature"]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _cookie_secret() -> str:
    secret = get_settings().attribution_cookie_secret.strip()
    return secret or resolve_signing_secret()


@dataclass(frozen=True)
class AttributionCookie:
    id: str
    code: str
    business_id: str
    timestamp: int
    source: str


@dataclass(frozen=True)
class AttributionStatus:
    has_attribution: bool
    reason: AttributionFailure | None = None
    cookie: AttributionCookie | None = None
    days_remaining: int | None = None
    hours_remaining: int | None = None
    days_old: int | None = None

    def to_response(self) -> dict:
        """JSON body for /api/verify-attribution."""
        if self.has_attribution and self.cookie:
            return {
                "hasAttribution": True,
                "ambassador": {
                    "code": self.cookie.code,
                    "id": self.cookie.id,
                    "businessId": self.cookie.business_id,
                },
                "daysRemaining": self.days_remaining,
                "hoursRemaining": self.hours_remaining,
                "message": f"Attribution active for {self.days_remaining} more days",
            }

        body = {"hasAttribution": False, "reason": self.reason}
        if self.reason == "no_cookie":
            body["message"] = "No attribution cookie found"
        elif self.reason == "expired":
            body["daysOld"] = self.days_old
            body["message"] = "Attribution cookie has expired"
        elif self.reason == "invalid_signature":
            body["message"] = "Attribution cookie failed verification"
        else:
            body["message"] = "Failed to parse attribution cookie"
        return body


def issue_attribution_cookie(
    ambassador_id: str,
    code: str,
    business_id: str,
    source: str | None = None,
) -> AttributionCookie:
    return AttributionCookie(
        id=ambassador_id,
        code=code,
        business_id=business_id,
        timestamp=_now_ms(),
        source=source or "direct",
    )


def encode_attribution_cookie(cookie: AttributionCookie) -> str:
    segment = b64url_encode(json.dumps(asdict(cookie), separators=(",", ":")).encode())
    return f"{segment}.{sign(segment, _cookie_secret())}"


def decode_attribution_cookie(raw: str) -> dict:
    """Verify the signature and return the embedded JSON object.

    Raises ValueError on malformed input, PermissionError on a bad signature.
    """
    parts = raw.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError("malformed attribution cookie")

    segment, signature = parts
    try:
        signature_ok = secure_compare(signature, sign(segment, _cookie_secret()))
    except UnicodeEncodeError as exc:
        raise ValueError("attribution cookie is not encodable") from exc
    if not signature_ok:
        raise PermissionError("attribution cookie signature mismatch")

    data = json.loads(b64url_decode(segment).decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError("attribution cookie is not an object")
    return data


def set_attribution_cookie(response: Response, cookie: AttributionCookie) -> None:
    # No Domain attribute: host-only keeps tenants on separate hosts isolated.
    response.set_cookie(
        key=COOKIE_NAME,
        value=encode_attribution_cookie(cookie),
        max_age=COOKIE_MAX_AGE,
        path="/",
        samesite="lax",
        secure=get_settings().is_production,
        httponly=True,
    )


def read_attribution(raw: str | None, now_ms: int | None = None) -> AttributionStatus:
    if not raw:
        return AttributionStatus(has_attribution=False, reason="no_cookie")

    try:
        data = decode_attribution_cookie(raw)
        timestamp = int(data["timestamp"])
        cookie = AttributionCookie(
            id=str(data.get("id") or ""),
            code=str(data.get("code") or ""),
            business_id=str(data.get("business_id") or ""),
            timestamp=timestamp,
            source=str(data.get("source") or "direct"),
        )
    except PermissionError:
        return AttributionStatus(has_attribution=False, reason="invalid_signature")
    except (ValueError, TypeError, KeyError):
        return AttributionStatus(has_attribution=False, reason="parse_error")

    window_ms = get_settings().attribution_window_days * DAY_MS
    age_ms = (now_ms if now_ms is not None else _now_ms()) - timestamp

    if age_ms > window_ms:
        return AttributionStatus(
            has_attribution=False,
            reason="expired",
            days_old=age_ms // DAY_MS,
        )

    remaining_ms = window_ms - age_ms
    return AttributionStatus(
        has_attribution=True,
        cookie=cookie,
        days_remaining=remaining_ms // DAY_MS,
        hours_remaining=remaining_ms // HOUR_MS,
    )
