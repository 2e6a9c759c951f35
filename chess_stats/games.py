"""
Game parsing and the in-memory game store.

parse_game() is pure: it turns a raw Chess.com game dict into a
player-perspective GameDetail. GameStore keeps games per player and the
per-player sync bookkeeping.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Iterable, Optional
from urllib.parse import unquote, urlparse

from chess_stats.models import Color, GameDetail, GameResult, TimeClass

DRAW_RESULTS = frozenset(
    {"agreed", "stalemate", "repetition", "insufficient", "50move", "timevsinsufficient"}
)

UNKNOWN_OPENING = "Unknown Opening"


def normalize_username(value: str) -> str:
    return value.strip().lower()


def to_perspective_result(raw_result: Optional[str]) -> GameResult:
    """Map a Chess.com result code onto win / draw / loss."""
    normalized = (raw_result or "").lower()
    if normalized == "win":
        return GameResult.win
    if normalized in DRAW_RESULTS:
        return GameResult.draw
    return GameResult.loss


def opening_name(eco: Optional[str]) -> Optional[str]:
    """
    Human-readable opening name.

    Chess.com sends the opening as a URL such as
    https://www.chess.com/openings/Sicilian-Defense-Najdorf; the last path
    segment with dashes turned into spaces is the name.
    """
    if not eco:
        return None
    if eco.startswith(("http://", "https://")):
        segment = urlparse(eco).path.rstrip("/").rsplit("/", 1)[-1]
        name = unquote(segment).replace("-", " ").strip()
        return name or None
    return eco.strip() or None


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _time_class(value: Optional[str]) -> TimeClass:
    try:
        return TimeClass(value)
    except ValueError:
        return TimeClass.unknown


def parse_game(raw: dict, username: str, game_id: int = 0) -> Optional[GameDetail]:
    """
    Build a GameDetail from the tracked player's side.

    Returns None when required fields are missing or the player took
    neither side.
    """
    white = raw.get("white") or {}
    black = raw.get("black") or {}
    if not raw.get("url") or not raw.get("end_time") or not white or not black:
        return None

    normalized = normalize_username(username)
    if normalize_username(white.get("username") or "") == normalized:
        color, own, other = Color.white, white, black
    elif normalize_username(black.get("username") or "") == normalized:
        color, own, other = Color.black, black, white
    else:
        return None

    eco_url = raw.get("eco_url") or raw.get("eco")
    return GameDetail(
        id=game_id,
        url=raw["url"],
        username=normalized,
        end_time=datetime.fromtimestamp(int(raw["end_time"]), tz=timezone.utc),
        time_class=_time_class(raw.get("time_class")),
        rated=bool(raw.get("rated", True)),
        color=color,
        result=to_perspective_result(own.get("result")),
        raw_result=own.get("result") or "",
        rating=_to_int(own.get("rating")),
        opponent=other.get("username") or "",
        opponent_rating=_to_int(other.get("rating")),
        opening=opening_name(eco_url),
        eco_url=eco_url,
        pgn=raw.get("pgn"),
    )


class SyncRecord:
    """Mutable sync bookkeeping for one player."""

    def __init__(self) -> None:
        self.in_progress = False
        self.last_synced_at: Optional[datetime] = None
        self.last_error: Optional[str] = None


class GameStore:
    """
    In-memory game storage keyed by normalized username.

    Games are deduplicated by URL; re-importing a game keeps its id.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._games: dict[str, dict[str, GameDetail]] = {}
        self._by_id: dict[int, GameDetail] = {}
        self._next_id = 1
        self._sync: dict[str, SyncRecord] = {}

    def upsert(self, username: str, raw_games: Iterable[dict]) -> tuple[int, int]:
        """Parse and store raw games. Returns (stored, skipped)."""
        key = normalize_username(username)
        stored = skipped = 0
        with self._lock:
            games = self._games.setdefault(key, {})
            for raw in raw_games:
                game = parse_game(raw, key)
                if game is None:
                    skipped += 1
                    continue
                existing = games.get(game.url)
                game_id = existing.id if existing is not None else self._allocate_id()
                game = game.model_copy(update={"id": game_id})
                games[game.url] = game
                self._by_id[game_id] = game
                stored += 1
        return stored, skipped

    def _allocate_id(self) -> int:
        game_id = self._next_id
        self._next_id += 1
        return game_id

    def games_for(self, username: str) -> list[GameDetail]:
        """All games of a player, oldest first."""
        with self._lock:
            games = list(self._games.get(normalize_username(username), {}).values())
        return sorted(games, key=lambda g: (g.end_time, g.id))

    def get(self, game_id: int) -> Optional[GameDetail]:
        with self._lock:
            return self._by_id.get(game_id)

    def count(self, username: str) -> int:
        with self._lock:
            return len(self._games.get(normalize_username(username), {}))

    def add_player(self, username: str) -> None:
        with self._lock:
            self._games.setdefault(normalize_username(username), {})

    def has_player(self, username: str) -> bool:
        with self._lock:
            return normalize_username(username) in self._games

    def sync_record(self, username: str) -> SyncRecord:
        with self._lock:
            return self._sync.setdefault(normalize_username(username), SyncRecord())
