"""
HMAC signing primitives shared by the ambassador token and the attribution cookie.

Wire format for both:  {base64url(payload)}.{base64url(hmac_sha256(payload_segment))}
Base64url is unpadded, matching what browsers and Node emit.
"""

import base64
import hashlib
import hmac

from referlabs.config import get_settings

import structlog

logger = structlog.get_logger()

_fallback_warned = False


class SigningSecretMissing(RuntimeError):
    """No secret is configured for token/cookie signing."""


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(segment: str) -> bytes:
    """Decode unpadded base64url. Raises ValueError on garbage."""
    padding = "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except (TypeError, ValueError, UnicodeEncodeError) as exc:
        raise ValueError("invalid base64url segment") from exc


def sign(payload_segment: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), payload_segment.encode(), hashlib.sha256).digest()
    return b64url_encode(digest)


def secure_compare(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def resolve_signing_secret() -> str:
    """Dedicated secret → public fallback → service-role key → anon key."""
    global _fallback_warned
    settings = get_settings()
    chain = [
        ("ambassador_api_secret", settings.ambassador_api_secret),
        ("public_ambassador_api_secret", settings.public_ambassador_api_secret),
        ("supabase_service_role_key", settings.supabase_service_role_key),
        ("supabase_anon_key", settings.supabase_anon_key),
    ]
    for name, value in chain:
        secret = value.strip()
        if not secret:
            continue
        if name != "ambassador_api_secret" and not _fallback_warned:
            # Broader-scoped keys work but should not be the long-term signer.
            logger.warning("signing_secret_fallback", source=name)
            _fallback_warned = True
        return secret

    raise SigningSecretMissing(
        "Missing RL_AMBASSADOR_API_SECRET (or Supabase keys). "
        "Set a secret to enable token signing."
    )
