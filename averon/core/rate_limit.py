import time
from typing import Dict, List, Tuple

from fastapi import HTTPException, Request, status

from averon.core.config import settings


class SimpleRateLimiter:
    """
    In-memory sliding-window rate limiter keyed by (key, client_ip).

    Per-process only: good for a single instance or as a first line in
    front of a shared limiter at the proxy.

    Keep call signatures clean (no *args/**kwargs), otherwise FastAPI
    treats them as query params.
    """

    def __init__(self, key: str, limit: int, window_seconds: int):
        self.key = key
        self.limit = int(limit)
        self.window_seconds = int(window_seconds)
        # (key, ip) -> list[timestamps]
        self._store: Dict[Tuple[str, str], List[float]] = {}

    def _client_ip(self, request: Request) -> str:
        # X-Forwarded-For may contain "client, proxy1, proxy2"
        xff = request.headers.get("x-forwarded-for")
        if xff:
            return xff.split(",")[0].strip() or "unknown"

        if request.client and request.client.host:
            return request.client.host

        return "unknown"

    def reset(self) -> None:
        self._store.clear()

    async def hit(self, request: Request) -> None:
        client_ip = self._client_ip(request)
        now = time.time()
        bucket_key = (self.key, client_ip)

        cutoff = now - self.window_seconds
        timestamps = [ts for ts in self._store.get(bucket_key, []) if ts >= cutoff]

        if len(timestamps) >= self.limit:
            self._store[bucket_key] = timestamps
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={"code": "RATE_LIMITED", "message": "Too many requests, please slow down."},
            )

        timestamps.append(now)
        self._store[bucket_key] = timestamps

    async def __call__(self, request: Request) -> None:
        await self.hit(request)


invite_issue_limiter = SimpleRateLimiter(
    "invite_issue",
    settings.invite_issue_rate_limit,
    settings.invite_issue_rate_window,
)
invite_redeem_limiter = SimpleRateLimiter(
    "invite_redeem",
    settings.invite_redeem_rate_limit,
    settings.invite_redeem_rate_window,
)


async def invite_issue_rate_limit(request: Request) -> None:
    await invite_issue_limiter.hit(request)


async def invite_redeem_rate_limit(request: Request) -> None:
    await invite_redeem_limiter.hit(request)
