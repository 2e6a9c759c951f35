"""
In-memory response cache with stale window, LRU bounds and tag invalidation.

Generic cache -- not Chess.com-specific. Entries hold already-serialized
JSON bodies keyed by a request fingerprint. Freshness is interpreted by the
caller (see cached_response.py); the store only keeps, orders and evicts.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional
from urllib.parse import quote

from fastapi.encoders import jsonable_encoder
from starlette.requests import Request

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "|"

# Characters encodeURIComponent leaves untouched.
_URI_SAFE = "-_.!~*'()"


class Freshness(str, Enum):
    fresh = "fresh"
    stale = "stale"
    expired = "expired"


@dataclass(frozen=True)
class CacheEntry:
    """A serialized response body with its timing and invalidation tags."""

    key: str
    body: str
    etag: str
    created_at: float
    expires_at: float
    stale_until: float
    tags: frozenset[str]

    def freshness(self, now: float) -> Freshness:
        if now < self.expires_at:
            return Freshness.fresh
        if now < self.stale_until:
            return Freshness.stale
        return Freshness.expired

    def age(self, now: float) -> int:
        """Whole seconds since creation, never negative."""
        return max(0, math.floor(now - self.created_at))


# ---------------------------------------------------------------------------
# Entry codec
# ---------------------------------------------------------------------------


def serialize_payload(payload: Any) -> str:
    """Compact JSON text for a producer result (pydantic models included)."""
    return json.dumps(
        jsonable_encoder(payload), separators=(",", ":"), ensure_ascii=False
    )


def compute_etag(body: str) -> str:
    """Strong, quoted ETag: base64url SHA-1 of the body."""
    digest = hashlib.sha1(body.encode("utf-8")).digest()
    return '"' + base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=") + '"'


def build_entry(
    key: str,
    payload: Any,
    max_age_seconds: float,
    stale_while_revalidate_seconds: float,
    tags: Iterable[str],
    now: Optional[float] = None,
) -> CacheEntry:
    """
    Build an immutable cache entry from a producer result.

    The ETag depends only on the serialized body, so identical payloads built
    at different times share it.
    """
    if now is None:
        now = time.monotonic()
    body = serialize_payload(payload)
    expires_at = now + max_age_seconds
    return CacheEntry(
        key=key,
        body=body,
        etag=compute_etag(body),
        created_at=now,
        expires_at=expires_at,
        stale_until=expires_at + stale_while_revalidate_seconds,
        tags=frozenset(tags),
    )


# ---------------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------------


def _is_empty(value: Any) -> bool:
    if value is None or value == "":
        return True
    return isinstance(value, (list, tuple)) and len(value) == 0


def _format_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def serialize_params(params: Mapping[str, Any]) -> str:
    """
    Canonical `key=value&...` form of a mapping.

    Empty values are dropped, keys sorted, list values joined with commas
    and every value percent-encoded.
    """
    parts = []
    for name in sorted(k for k, v in params.items() if not _is_empty(v)):
        value = params[name]
        if isinstance(value, (list, tuple)):
            text = ",".join(_format_scalar(v) for v in value)
        else:
            text = _format_scalar(value)
        parts.append(f"{name}={quote(text, safe=_URI_SAFE)}")
    return "&".join(parts)


def _query_to_dict(request: Request) -> dict[str, Any]:
    """Collapse repeated query parameters into lists."""
    query: dict[str, Any] = {}
    for name, value in request.query_params.multi_items():
        if name in query:
            existing = query[name]
            query[name] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            query[name] = value
    return query


def compose_cache_key(
    route_id: str,
    params: Optional[Mapping[str, Any]] = None,
    query: Optional[Mapping[str, Any]] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> str:
    segments = [
        route_id,
        serialize_params(params or {}),
        serialize_params(query or {}),
        serialize_params(extra or {}),
    ]
    return KEY_SEPARATOR.join(s for s in segments if s)


def build_cache_key(
    route_id: str, request: Request, extra: Optional[Mapping[str, Any]] = None
) -> str:
    """Fingerprint a request from its route id, path params, query and extras."""
    return compose_cache_key(
        route_id,
        params=request.path_params,
        query=_query_to_dict(request),
        extra=extra,
    )


# ---------------------------------------------------------------------------
# Background refresh coordination
# ---------------------------------------------------------------------------


class RefreshCoordinator:
    """
    Tracks which keys have a background refresh in flight.

    begin() is an atomic check-and-mark, so at most one refresh per key can
    be started no matter how many callers observe the same stale entry.
    Spawned tasks are retained until they settle so shutdown can wait on them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._refreshing: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    def is_refreshing(self, key: str) -> bool:
        """Snapshot only; use begin() to claim a key."""
        with self._lock:
            return key in self._refreshing

    def mark_refreshing(self, key: str, value: bool) -> None:
        """Set or clear the mark unconditionally. spawn() clears through here."""
        with self._lock:
            if value:
                self._refreshing.add(key)
            else:
                self._refreshing.discard(key)

    def begin(self, key: str) -> bool:
        """Mark key as refreshing. Returns False if it already was."""
        with self._lock:
            if key in self._refreshing:
                return False
            self._refreshing.add(key)
            return True

    def spawn(self, key: str, refresh: Callable[[], Awaitable[None]]) -> bool:
        """
        Run refresh() as a background task unless one is already in flight.

        The in-flight mark is cleared when the task settles, whatever the
        outcome. Returns True if a task was started.
        """
        loop = asyncio.get_running_loop()
        if not self.begin(key):
            return False

        async def _run() -> None:
            try:
                await refresh()
            finally:
                self.mark_refreshing(key, False)

        task = loop.create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._refreshing)

    async def wait_idle(self) -> None:
        """Wait for every spawned refresh to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ResponseCache:
    """
    Bounded LRU store of CacheEntry objects.

    - get(): returns the entry regardless of freshness and marks it
      most-recently used.
    - set(): inserts or replaces, then evicts least-recently used entries
      beyond max_entries.
    - invalidate_tags(): drops every entry sharing a tag with the argument.
    """

    def __init__(
        self,
        max_entries: int = 300,
        refreshes: Optional[RefreshCoordinator] = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self.refreshes = refreshes or RefreshCoordinator()
        self._clock = time.monotonic  # overridable for testing

    def now(self) -> float:
        return self._clock()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def keys(self) -> list[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries)

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
            return entry

    def set(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries.pop(entry.key, None)
            self._entries[entry.key] = entry
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted cache entry %s", evicted)

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Remove entries tagged with any of tags. Returns the number removed."""
        wanted = frozenset(tags)
        with self._lock:
            doomed = [k for k, e in self._entries.items() if e.tags & wanted]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.info(
                "Invalidated %d cache entries for tags %s",
                len(doomed),
                sorted(wanted),
            )
        return len(doomed)

    def clear(self) -> None:
        """Remove all entries."""
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, int]:
        now = self._clock()
        fresh = stale = 0
        with self._lock:
            total = len(self._entries)
            for entry in self._entries.values():
                state = entry.freshness(now)
                if state is Freshness.fresh:
                    fresh += 1
                elif state is Freshness.stale:
                    stale += 1
        return {"entries": total, "fresh": fresh, "stale": stale}
