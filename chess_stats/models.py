"""
Pydantic models for the chess-stats API: request filters and responses.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


class TimeClass(str, Enum):
    bullet = "bullet"
    blitz = "blitz"
    rapid = "rapid"
    daily = "daily"
    unknown = "unknown"


class GameResult(str, Enum):
    win = "win"
    loss = "loss"
    draw = "draw"


class Color(str, Enum):
    white = "white"
    black = "black"


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class StatsFilters(BaseModel):
    """Filters shared by every stats and games endpoint."""

    username: Optional[str] = None
    time_class: Optional[TimeClass] = None
    from_ts: Optional[int] = Field(default=None, gt=0, description="Epoch seconds, inclusive")
    to_ts: Optional[int] = Field(default=None, gt=0, description="Epoch seconds, inclusive")


class GamesFilters(StatsFilters):
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)
    result: Optional[GameResult] = None
    color: Optional[Color] = None
    eco: Optional[str] = Field(default=None, description="Opening name substring")
    search: Optional[str] = Field(default=None, description="Opponent or opening substring")


# ---------------------------------------------------------------------------
# Games
# ---------------------------------------------------------------------------


class GameSummary(BaseModel):
    """One game seen from the tracked player's side."""

    id: int
    url: str
    username: str
    end_time: datetime
    time_class: TimeClass
    rated: bool = True
    color: Color
    result: GameResult
    raw_result: str = Field(description="Chess.com result code for the player")
    rating: Optional[int] = None
    opponent: str
    opponent_rating: Optional[int] = None
    opening: Optional[str] = None
    eco_url: Optional[str] = None


class GameDetail(GameSummary):
    pgn: Optional[str] = None


class GameListResponse(BaseModel):
    username: str
    items: list[GameSummary]
    page: int
    page_size: int
    total: int


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


class RecordCounts(BaseModel):
    games: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    win_rate: float = Field(default=0.0, description="Percentage of games won")


class TimeClassSummary(RecordCounts):
    time_class: TimeClass
    latest_rating: Optional[int] = None


class SummaryResponse(RecordCounts):
    username: str
    by_time_class: list[TimeClassSummary] = Field(default_factory=list)


class RatingPoint(BaseModel):
    game_id: int
    time: datetime
    time_class: TimeClass
    rating: int


class RatingSeriesResponse(BaseModel):
    username: str
    points: list[RatingPoint]


class OpeningStats(RecordCounts):
    opening: str


class OpeningsResponse(BaseModel):
    username: str
    openings: list[OpeningStats]


class CurrentStreak(BaseModel):
    result: Literal["win", "loss", "draw", "none"] = "none"
    length: int = 0


class TiltSlice(BaseModel):
    """Performance in games played right after a run of losses."""

    sample_size: int = 0
    avg_points: float = Field(default=0.0, description="Win 1, draw 0.5, loss 0")
    win_rate: float = Field(default=0.0, description="Percentage of games won")


class TiltIndex(BaseModel):
    after_1_loss: TiltSlice
    after_2_losses: TiltSlice
    after_3_losses: TiltSlice


class StreaksResponse(BaseModel):
    username: str
    total_games: int
    longest_win_streak: int
    longest_loss_streak: int
    current_streak: CurrentStreak
    tilt_index: TiltIndex


class HeatmapCell(RecordCounts):
    weekday: int = Field(ge=0, le=6, description="UTC weekday, 0 = Sunday")
    hour: int = Field(ge=0, le=23, description="UTC hour")


class HeatmapResponse(BaseModel):
    username: str
    cells: list[HeatmapCell]


# ---------------------------------------------------------------------------
# Sync and diagnostics
# ---------------------------------------------------------------------------


class SyncRequest(BaseModel):
    username: Optional[str] = None
    full: bool = False


class SyncResult(BaseModel):
    username: str
    full: bool
    archives_processed: int
    games_imported: int
    games_skipped: int
    games_total: int
    last_synced_at: datetime


class SyncStatus(BaseModel):
    username: Optional[str] = None
    in_progress: bool = False
    last_synced_at: Optional[datetime] = None
    games_count: int = 0
    last_error: Optional[str] = None


class CacheStatsResponse(BaseModel):
    entries: int
    fresh: int
    stale: int
