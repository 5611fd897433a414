"""
Short-lived ambassador self-service tokens.

Format:  {base64url(json payload)}.{base64url(hmac_sig)}
- payload    → {"code": referral code, "exp": epoch ms, "nonce": 6 random bytes}
- hmac_sig   → HMAC-SHA256(payload segment, signing secret)

Tokens are bearer capabilities: never persisted, verified on every request.
Verification returns a reason instead of raising so callers can log precisely
while answering the end user with a plain 401.
"""

import json
import secrets
import time
from dataclasses import dataclass
from typing import Literal

from referlabs.config import get_settings
from referlabs.core.signing import (
    b64url_decode,
    b64url_encode,
    resolve_signing_secret,
    secure_compare,
    sign,
)

import structlog

logger = structlog.get_logger()

DEFAULT_TTL_MS = 15 * 60 * 1000

TokenFailure = Literal[
    "missing_token",
    "malformed_token",
    "invalid_signature",
    "code_mismatch",
    "expired",
    "parse_failure",
]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class TokenCheck:
    valid: bool
    reason: TokenFailure | None = None
    payload: dict | None = None


def create_ambassador_token(code: str, ttl_ms: int | None = None) -> str:
    """Mint a signed token for one referral code."""
    if ttl_ms is None:
        ttl_ms = get_settings().ambassador_token_ttl_ms or DEFAULT_TTL_MS
    payload = {
        "code": code,
        "exp": _now_ms() + ttl_ms,
        "nonce": b64url_encode(secrets.token_bytes(6)),
    }
    payload_segment = b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
    return f"{payload_segment}.{sign(payload_segment, resolve_signing_secret())}"


def verify_ambassador_token(token: str | None, code: str | None) -> TokenCheck:
    if not token or not code:
        return TokenCheck(valid=False, reason="missing_token")

    parts = token.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return TokenCheck(valid=False, reason="malformed_token")

    payload_segment, signature = parts
    try:
        signature_ok = secure_compare(signature, sign(payload_segment, resolve_signing_secret()))
    except UnicodeEncodeError:
        return TokenCheck(valid=False, reason="malformed_token")
    if not signature_ok:
        return TokenCheck(valid=False, reason="invalid_signature")

    try:
        payload = json.loads(b64url_decode(payload_segment).decode("utf-8"))
        token_code = payload["code"]
        exp = int(payload["exp"])
    except (ValueError, TypeError, KeyError) as exc:
        logger.error("ambassador_token_parse_failed", error=str(exc))
        return TokenCheck(valid=False, reason="parse_failure")

    if token_code != code:
        return TokenCheck(valid=False, reason="code_mismatch")

    if _now_ms() > exp:
        return TokenCheck(valid=False, reason="expired")

    return TokenCheck(valid=True, payload=payload)
