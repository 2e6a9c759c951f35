"""
Async Chess.com public API client.

Thin wrapper around httpx with bounded concurrency, a minimum spacing
between request starts and retries on transient statuses.
Raises ChessComError / ChessComHttpError on failures.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional, TypeVar
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

CHESSCOM_BASE_URL = "https://api.chess.com/pub"

RETRIABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MAX_ATTEMPTS = 4

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[Any]]


class ChessComError(Exception):
    """Raised when a Chess.com API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ChessComHttpError(ChessComError):
    """Chess.com answered with a non-success status."""

    def __init__(self, message: str, status_code: int, response_body: str):
        super().__init__(message, status_code=status_code)
        self.response_body = response_body


class ConcurrencyLimiter:
    """
    At most `limit` holders at once; the rest wait in FIFO order.

    A released slot is handed straight to the oldest waiter, so late
    arrivals cannot overtake the queue.
    """

    def __init__(self, limit: int) -> None:
        self._limit = max(1, limit)
        self._running = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def running(self) -> int:
        return self._running

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def acquire(self) -> None:
        if self._running < self._limit and not self._waiters:
            self._running += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just before cancellation; pass it on.
                self.release()
            elif waiter in self._waiters:
                # release() may already have popped and skipped it.
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # The running count carries over to the woken waiter.
                waiter.set_result(None)
                return
        self._running -= 1

    async def __aenter__(self) -> "ConcurrencyLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.release()

    async def run(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        async with self:
            return await func(*args)


class RateLimitGate:
    """
    Spaces consecutive passes at least `interval` seconds apart.

    Callers queue on an asyncio.Lock (FIFO); each one waits until the next
    allowed time, then stamps the following slot.
    """

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._interval = interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_allowed_at = 0.0

    async def wait(self) -> None:
        async with self._lock:
            delay = self._next_allowed_at - self._clock()
            if delay > 0:
                await self._sleep(delay)
            self._next_allowed_at = self._clock() + self._interval


def _retry_after_seconds(response: httpx.Response) -> float:
    raw = response.headers.get("retry-after")
    if not raw:
        return 0.0
    try:
        return float(raw)
    except ValueError:
        return 0.0


class ChessComClient:
    """Async client for the Chess.com published-data API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        user_agent: str,
        rate_limit_ms: int = 300,
        concurrency: int = 1,
        base_url: str = CHESSCOM_BASE_URL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._http = http_client
        self._user_agent = user_agent
        self._rate_limit_ms = rate_limit_ms
        self._base_url = base_url.rstrip("/")
        self._sleep = sleep
        self._limiter = ConcurrencyLimiter(concurrency)
        self._gate = RateLimitGate(rate_limit_ms / 1000.0, clock=clock, sleep=sleep)

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self._user_agent}

    def _player_url(self, username: str, suffix: str = "") -> str:
        return f"{self._base_url}/player/{quote(username, safe='')}{suffix}"

    async def get_player(self, username: str) -> dict:
        return await self._request_json(self._player_url(username))

    async def get_stats(self, username: str) -> dict:
        return await self._request_json(self._player_url(username, "/stats"))

    async def get_archives(self, username: str) -> list[str]:
        """Monthly archive URLs for a player, oldest first as Chess.com lists them."""
        body = await self._request_json(
            self._player_url(username, "/games/archives")
        )
        return body.get("archives") or []

    async def get_monthly_games(self, username: str, year: int, month: int) -> dict:
        return await self._request_json(
            self._player_url(username, f"/games/{year}/{month:02d}")
        )

    async def get_monthly_games_by_url(self, url: str) -> dict:
        return await self._request_json(url)

    async def _request_json(self, url: str) -> Any:
        return await self._limiter.run(self._request_with_retries, url)

    async def _request_with_retries(self, url: str) -> Any:
        """
        GET url with up to MAX_ATTEMPTS attempts.

        Each attempt waits for the rate-limit gate. Retriable statuses back
        off for Retry-After seconds when given, else rate_limit_ms * 2^n.
        """
        for attempt in range(MAX_ATTEMPTS):
            await self._gate.wait()
            try:
                response = await self._http.get(
                    url, headers=self._headers(), timeout=30.0
                )
            except httpx.HTTPError as exc:
                logger.error("Chess.com request failed: %s %s -> %s", "GET", url, exc)
                raise ChessComError(f"Connection error: {exc}") from exc

            if response.is_success:
                return response.json()

            body = response.text
            if (
                response.status_code in RETRIABLE_STATUS_CODES
                and attempt < MAX_ATTEMPTS - 1
            ):
                retry_after = _retry_after_seconds(response)
                if retry_after > 0:
                    backoff = retry_after
                else:
                    backoff = self._rate_limit_ms * (2 ** (attempt + 1)) / 1000.0
                logger.warning(
                    "Chess.com returned %d for %s, retrying in %.2fs (attempt %d/%d)",
                    response.status_code,
                    url,
                    backoff,
                    attempt + 1,
                    MAX_ATTEMPTS,
                )
                await self._sleep(backoff)
                continue

            logger.error("Chess.com returned %d for %s", response.status_code, url)
            raise ChessComHttpError(
                f"Chess.com request failed ({response.status_code}) for {url}",
                status_code=response.status_code,
                response_body=body,
            )

        raise ChessComError(f"Request retries exhausted for {url}")
