"""
Rate limiter: fixed window counters per preset + client identifier.

Presets (per minute, configurable):
  - general:          public endpoints (referral redirect)
  - campaign_send:    owner-triggered campaign dispatch
  - ambassador_code:  ambassador self-service, keyed by referral code
  - track_conversion: conversion tracking beacons

Storage:
  - Redis (INCR + EXPIRE) when RL_REDIS_URL is set, shared across instances
  - Otherwise an in-process dict. Only correct for a single instance
    (dev / single-container deploys); every instance keeps its own counts.
"""

import time

import redis.asyncio as aioredis
from fastapi import HTTPException, Request

from referlabs.config import get_settings

import structlog

logger = structlog.get_logger()

WINDOW_SECONDS = 60

# key -> (count, window_reset_epoch)
_memory_store: dict[str, tuple[int, float]] = {}
_redis_client: aioredis.Redis | None = None


def _preset_limit(preset: str) -> int:
    settings = get_settings()
    limits = {
        "general": settings.rate_limit_general_per_minute,
        "campaign_send": settings.rate_limit_campaign_send_per_minute,
        "ambassador_code": settings.rate_limit_ambassador_code_per_minute,
        "track_conversion": settings.rate_limit_track_conversion_per_minute,
    }
    if preset not in limits:
        raise ValueError(f"Unknown rate limit preset: {preset}")
    return limits[preset]


def _memory_hit(key: str, window_seconds: int) -> tuple[int, float]:
    now = time.time()

    # Periodic cleanup
    if len(_memory_store) > 10000:
        for k in [k for k, (_, reset) in _memory_store.items() if reset < now]:
            del _memory_store[k]

    count, reset_at = _memory_store.get(key, (0, 0.0))
    if now > reset_at:
        count, reset_at = 0, now + window_seconds
    count += 1
    _memory_store[key] = (count, reset_at)
    return count, reset_at


def _get_redis() -> aioredis.Redis | None:
    global _redis_client
    settings = get_settings()
    if not settings.redis_url:
        return None
    if _redis_client is None:
        _redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


async def _redis_hit(client: aioredis.Redis, key: str, window_seconds: int) -> tuple[int, float]:
    count = await client.incr(key)
    if count == 1:
        await client.expire(key, window_seconds)
    ttl = await client.ttl(key)
    if ttl < 0:
        # Key lost its expiry (crash between INCR and EXPIRE); re-arm it.
        await client.expire(key, window_seconds)
        ttl = window_seconds
    return int(count), time.time() + ttl


async def hit(key: str, window_seconds: int = WINDOW_SECONDS) -> tuple[int, float]:
    """Count one request against `key`. Returns (count_in_window, reset_epoch)."""
    client = _get_redis()
    if client is not None:
        try:
            return await _redis_hit(client, f"rl:{key}", window_seconds)
        except aioredis.RedisError as exc:
            logger.warning("rate_limit_redis_unavailable", error=str(exc))
    return _memory_hit(key, window_seconds)


def get_client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


async def check_rate_limit_for_identifier(identifier: str, preset: str) -> int:
    """Raise 429 when `identifier` is over the preset. Returns remaining requests."""
    limit = _preset_limit(preset)
    count, reset_at = await hit(f"{preset}:{identifier}")
    if count > limit:
        retry_after = max(1, int(reset_at - time.time()))
        logger.warning("rate_limit_exceeded", preset=preset)
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Please try again in {retry_after} seconds.",
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(reset_at)),
            },
        )
    return limit - count


async def check_rate_limit(request: Request, preset: str) -> int:
    return await check_rate_limit_for_identifier(get_client_identifier(request), preset)


async def close_rate_limit_store() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None


def reset_rate_limits() -> None:
    """Clear the in-process counters."""
    _memory_store.clear()
