"""
Link reachability preflight for campaign referral links.

Two-step probe per URL: HEAD first, then GET when the server answers
405/501 (HEAD not supported). URLs are probed sequentially, so keep the
list bounded. Each probe can take up to the client timeout.
"""

import re
from dataclasses import dataclass

import httpx

from referlabs.config import get_settings

import structlog

logger = structlog.get_logger()

DEFAULT_SKIP_PATTERNS: list[re.Pattern] = [
    re.compile(r"localhost", re.IGNORECASE),
    re.compile(r"127\.0\.0\.1"),
    re.compile(r"\[::1\]"),
]


@dataclass(frozen=True)
class LinkCheckFailure:
    url: str
    status: int | None = None
    error: str | None = None


async def probe_url(client: httpx.AsyncClient, url: str) -> LinkCheckFailure | None:
    """Returns None when reachable, else the failure."""
    try:
        resp = await client.head(url)
        if resp.is_success:
            return None
        if resp.status_code in (405, 501):
            resp = await client.get(url)
            if resp.is_success:
                return None
        return LinkCheckFailure(url=url, status=resp.status_code)
    except httpx.HTTPError as exc:
        return LinkCheckFailure(url=url, error=str(exc) or exc.__class__.__name__)


async def verify_urls_are_reachable(
    urls: list[str | None],
    skip_patterns: list[re.Pattern] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[bool, list[LinkCheckFailure]]:
    patterns = DEFAULT_SKIP_PATTERNS if skip_patterns is None else skip_patterns
    unique_urls = list(dict.fromkeys(u for u in urls if isinstance(u, str) and u))

    failures: list[LinkCheckFailure] = []
    async with httpx.AsyncClient(
        transport=transport,
        follow_redirects=True,
        timeout=get_settings().link_probe_timeout_seconds,
        headers={"Cache-Control": "no-store"},
    ) as client:
        for url in unique_urls:
            if any(p.search(url) for p in patterns):
                continue
            failure = await probe_url(client, url)
            if failure:
                logger.info("link_preflight_failed", url=url,
                            status=failure.status, error=failure.error)
                failures.append(failure)

    return not failures, failures
