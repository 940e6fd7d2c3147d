"""Per-credential access-token cache with coalesced refresh.

The broker issues at most one token per minute per app key.  Concurrent
callers that find no valid token share a single in-flight refresh
future, and a refresh that would come too soon after the previous
issuance first sleeps out the remainder of the interval.

One ``TokenCache`` is created by the process and handed to every
gateway; tests build their own to stay isolated.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TOKEN_EXPIRY_SECONDS = 86400

TokenIssuer = Callable[[], Awaitable[tuple[str, float]]]


@dataclass
class CachedToken:
    access_token: str
    expires_at: float


class TokenCache:
    """Keyed token cache plus lock, shared by reference.

    Args:
        min_refresh_interval: Seconds that must separate two issuances
            for the same key.
        expiry_margin: Seconds shaved off the broker's ``expires_in`` so a
            token is never used right at its expiry.
        clock: Monotonic time source, in seconds.
        sleep: Coroutine used to wait out the refresh interval.
    """

    def __init__(
        self,
        min_refresh_interval: float = 61.0,
        expiry_margin: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._min_refresh_interval = min_refresh_interval
        self._expiry_margin = expiry_margin
        self._clock = clock
        self._sleep = sleep
        self._tokens: dict[str, CachedToken] = {}
        self._last_issued: dict[str, float] = {}
        self._inflight: dict[str, asyncio.Future[str]] = {}
        self._lock = asyncio.Lock()

    async def get_token(self, key: str, issue: TokenIssuer) -> str:
        """Return a valid token for ``key``, refreshing through ``issue`` if needed.

        ``issue`` returns ``(access_token, expires_in_seconds)``.  Errors
        raised by ``issue`` propagate to every caller waiting on that
        refresh.
        """
        async with self._lock:
            cached = self._tokens.get(key)
            if cached is not None and cached.expires_at > self._clock():
                return cached.access_token
            future = self._inflight.get(key)
            if future is None:
                future = asyncio.ensure_future(self._refresh(key, issue))
                self._inflight[key] = future
            else:
                logger.debug("token_refresh_joined", key_suffix=key[-4:])
        return await asyncio.shield(future)

    async def _refresh(self, key: str, issue: TokenIssuer) -> str:
        try:
            last = self._last_issued.get(key)
            if last is not None:
                wait = last + self._min_refresh_interval - self._clock()
                if wait > 0:
                    logger.info(
                        "token_refresh_throttled",
                        key_suffix=key[-4:],
                        wait_seconds=round(wait, 1),
                    )
                    await self._sleep(wait)

            access_token, expires_in = await issue()
            issued_at = self._clock()
            self._last_issued[key] = issued_at
            lifetime = max(
                float(expires_in or DEFAULT_TOKEN_EXPIRY_SECONDS) - self._expiry_margin,
                0.0,
            )
            self._tokens[key] = CachedToken(access_token, issued_at + lifetime)
            logger.info(
                "token_issued", key_suffix=key[-4:], expires_in=expires_in
            )
            return access_token
        finally:
            self._inflight.pop(key, None)

    def invalidate(self, key: str) -> None:
        """Drop the cached token for ``key`` (e.g. after the broker rejects it)."""
        self._tokens.pop(key, None)
        logger.info("token_invalidated", key_suffix=key[-4:])

    def has_valid_token(self, key: str) -> bool:
        cached = self._tokens.get(key)
        return cached is not None and cached.expires_at > self._clock()
