"""
Stale-while-revalidate JSON responses backed by ResponseCache.

cached_json_response() decides HIT / STALE / MISS for one request,
runs the producer synchronously on a miss or in the background on a stale
hit, and renders caching headers plus the 304 short-circuit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from starlette.requests import Request
from starlette.responses import Response

from chess_stats.cache import CacheEntry, Freshness, ResponseCache, build_entry

logger = logging.getLogger(__name__)

JSON_MEDIA_TYPE = "application/json; charset=utf-8"

Producer = Callable[[], Awaitable[Any]]
ErrorReporter = Callable[[BaseException], None]


class CacheStatus(str, Enum):
    hit = "HIT"
    stale = "STALE"
    miss = "MISS"


@dataclass(frozen=True)
class CacheConfig:
    """Caching policy for one logical request."""

    key: str
    max_age_seconds: int
    stale_while_revalidate_seconds: int = 0
    tags: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.max_age_seconds < 0:
            raise ValueError("max_age_seconds must be >= 0")
        if self.stale_while_revalidate_seconds < 0:
            raise ValueError("stale_while_revalidate_seconds must be >= 0")
        object.__setattr__(self, "tags", tuple(self.tags))


def format_cache_control(max_age_seconds: int, stale_while_revalidate_seconds: int) -> str:
    return (
        f"public, max-age={max_age_seconds}, "
        f"stale-while-revalidate={stale_while_revalidate_seconds}"
    )


def normalize_etag_header(value: Optional[str]) -> Optional[str]:
    """First comma-separated validator of an If-None-Match header, trimmed."""
    if not value:
        return None
    first = value.split(",")[0].strip()
    return first or None


def caching_headers(
    entry: CacheEntry, config: CacheConfig, status: CacheStatus, now: float
) -> dict[str, str]:
    return {
        "Cache-Control": format_cache_control(
            config.max_age_seconds, config.stale_while_revalidate_seconds
        ),
        "ETag": entry.etag,
        "Vary": "Accept-Encoding",
        "X-Cache": status.value,
        "Age": str(entry.age(now)),
    }


def render_entry(
    request: Request,
    entry: CacheEntry,
    config: CacheConfig,
    status: CacheStatus,
    now: float,
) -> Response:
    """
    Build the HTTP response for an entry.

    HIT and STALE honor If-None-Match; a MISS always carries the body.
    """
    headers = caching_headers(entry, config, status, now)
    if status is not CacheStatus.miss:
        if_none_match = normalize_etag_header(request.headers.get("if-none-match"))
        if if_none_match is not None and if_none_match == entry.etag:
            return Response(status_code=304, headers=headers)
    return Response(
        content=entry.body,
        status_code=200,
        headers=headers,
        media_type=JSON_MEDIA_TYPE,
    )


def _log_background_error(exc: BaseException) -> None:
    logger.warning("Background refresh failed: %s", exc, exc_info=exc)


async def cached_json_response(
    request: Request,
    cache: ResponseCache,
    config: CacheConfig,
    producer: Producer,
    on_background_error: Optional[ErrorReporter] = None,
) -> Response:
    """
    Serve a JSON response for config.key through the cache.

    - FRESH entry: served as HIT, producer not called.
    - STALE entry: served as STALE; one background refresh is started unless
      one is already running for this key. Refresh errors go to
      on_background_error and never reach the requester.
    - No entry or EXPIRED: producer awaited, result stored, served as MISS.
      Producer errors propagate and nothing is stored.
    """
    now = cache.now()
    existing = cache.get(config.key)
    state = existing.freshness(now) if existing is not None else Freshness.expired

    if existing is not None and state is Freshness.fresh:
        logger.debug("Cache HIT %s", config.key)
        return render_entry(request, existing, config, CacheStatus.hit, now)

    if existing is not None and state is Freshness.stale:
        logger.debug("Cache STALE %s", config.key)
        response = render_entry(request, existing, config, CacheStatus.stale, now)
        reporter = on_background_error or _log_background_error

        async def refresh() -> None:
            try:
                payload = await producer()
                entry = _entry_for(config, payload, cache.now())
            except Exception as exc:
                try:
                    reporter(exc)
                except Exception:
                    logger.exception("Background error reporter failed for %s", config.key)
                return
            cache.set(entry)
            logger.debug("Background refresh stored %s", config.key)

        if cache.refreshes.spawn(config.key, refresh):
            logger.debug("Background refresh started for %s", config.key)
        return response

    logger.debug("Cache MISS %s", config.key)
    payload = await producer()
    fresh = _entry_for(config, payload, cache.now())
    cache.set(fresh)
    return render_entry(request, fresh, config, CacheStatus.miss, cache.now())


def _entry_for(config: CacheConfig, payload: Any, now: float) -> CacheEntry:
    return build_entry(
        config.key,
        payload,
        config.max_age_seconds,
        config.stale_while_revalidate_seconds,
        config.tags,
        now=now,
    )
