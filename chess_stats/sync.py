"""
Sync service: pulls monthly game archives from Chess.com into the store.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from chess_stats.chesscom_client import ChessComClient, ChessComError
from chess_stats.config import AppConfig
from chess_stats.errors import ServiceError
from chess_stats.games import GameStore, normalize_username
from chess_stats.models import SyncResult, SyncStatus

logger = logging.getLogger(__name__)

_ARCHIVE_RE = re.compile(r"/games/(\d{4})/(\d{2})$")


def select_archive_urls(archive_urls: list[str], max_months: int, full: bool) -> list[str]:
    """
    Pick which monthly archives to fetch, in chronological order.

    Non-archive URLs are ignored. Unless full, only the newest max_months.
    """
    parsed = []
    for url in archive_urls:
        match = _ARCHIVE_RE.search(url)
        if match:
            parsed.append((int(match.group(1)), int(match.group(2)), url))
    parsed.sort(reverse=True)
    if not full:
        parsed = parsed[:max_months]
    return [url for _, _, url in sorted(parsed)]


class SyncService:
    """Imports a player's games. One sync runs at a time."""

    def __init__(
        self, config: AppConfig, chesscom_client: ChessComClient, store: GameStore
    ) -> None:
        self._config = config
        self._chesscom = chesscom_client
        self._store = store
        self._running: Optional[str] = None

    @property
    def is_syncing(self) -> bool:
        return self._running is not None

    def _resolve_username(self, username: Optional[str]) -> Optional[str]:
        candidate = (username or "").strip() or self._config.default_username
        return normalize_username(candidate) if candidate else None

    async def run_sync(self, username: Optional[str] = None, full: bool = False) -> SyncResult:
        resolved = self._resolve_username(username)
        if resolved is None:
            raise ServiceError(
                400, "username is required. Provide it in body or CHESSCOM_USERNAME env."
            )
        if self._running is not None:
            raise ServiceError(409, "A sync is already running. Try again in a moment.")

        self._running = resolved
        record = self._store.sync_record(resolved)
        record.in_progress = True
        logger.info("Sync started for %s (full=%s)", resolved, full)
        try:
            archive_urls = await self._chesscom.get_archives(resolved)
            selected = select_archive_urls(archive_urls, self._config.max_months, full)
            self._store.add_player(resolved)

            imported = skipped = 0
            for url in selected:
                payload = await self._chesscom.get_monthly_games_by_url(url)
                stored, dropped = self._store.upsert(resolved, payload.get("games") or [])
                imported += stored
                skipped += dropped
        except ChessComError as exc:
            record.last_error = str(exc)
            logger.warning("Sync failed for %s: %s", resolved, exc)
            raise
        finally:
            record.in_progress = False
            self._running = None

        record.last_synced_at = datetime.now(timezone.utc)
        record.last_error = None
        logger.info(
            "Sync finished for %s: %d archives, %d games imported, %d skipped",
            resolved,
            len(selected),
            imported,
            skipped,
        )
        return SyncResult(
            username=resolved,
            full=full,
            archives_processed=len(selected),
            games_imported=imported,
            games_skipped=skipped,
            games_total=self._store.count(resolved),
            last_synced_at=record.last_synced_at,
        )

    async def status(self, username: Optional[str] = None) -> SyncStatus:
        resolved = self._resolve_username(username)
        if resolved is None:
            return SyncStatus(in_progress=self.is_syncing)
        record = self._store.sync_record(resolved)
        return SyncStatus(
            username=resolved,
            in_progress=record.in_progress,
            last_synced_at=record.last_synced_at,
            games_count=self._store.count(resolved),
            last_error=record.last_error,
        )
