"""
Stats service: read-side aggregation over the game store.

Every public coroutine here is a cache producer: it returns a pydantic
response model and raises ServiceError for request-level failures.
"""

from __future__ import annotations

import logging
from datetime import timezone
from typing import Iterable, Optional

from chess_stats.config import AppConfig
from chess_stats.errors import ServiceError
from chess_stats.games import UNKNOWN_OPENING, GameStore, normalize_username
from chess_stats.models import (
    CurrentStreak,
    GameDetail,
    GameListResponse,
    GameResult,
    GameSummary,
    GamesFilters,
    HeatmapCell,
    HeatmapResponse,
    OpeningsResponse,
    OpeningStats,
    RatingPoint,
    RatingSeriesResponse,
    RecordCounts,
    StatsFilters,
    StreaksResponse,
    SummaryResponse,
    TiltIndex,
    TiltSlice,
    TimeClassSummary,
)

logger = logging.getLogger(__name__)


def tally(games: Iterable[GameDetail]) -> RecordCounts:
    """Win/loss/draw counts and win percentage for a set of games."""
    counts = RecordCounts()
    for game in games:
        counts.games += 1
        if game.result == GameResult.win:
            counts.wins += 1
        elif game.result == GameResult.draw:
            counts.draws += 1
        else:
            counts.losses += 1
    if counts.games:
        counts.win_rate = round(100.0 * counts.wins / counts.games, 2)
    return counts


def tilt_slice(results: list[GameResult], losses: int) -> TiltSlice:
    """Record over games played directly after `losses` consecutive losses."""
    sample = wins = 0
    points = 0.0
    for index in range(losses, len(results)):
        if any(results[index - offset] != GameResult.loss for offset in range(1, losses + 1)):
            continue
        sample += 1
        if results[index] == GameResult.win:
            wins += 1
            points += 1.0
        elif results[index] == GameResult.draw:
            points += 0.5
    if not sample:
        return TiltSlice()
    return TiltSlice(
        sample_size=sample,
        avg_points=round(points / sample, 4),
        win_rate=round(100.0 * wins / sample, 2),
    )


class StatsService:
    """Computes statistics and game listings for synced players."""

    def __init__(self, config: AppConfig, store: GameStore) -> None:
        self._config = config
        self._store = store

    def resolve_username(self, username: Optional[str]) -> str:
        candidate = (username or "").strip() or self._config.default_username
        if not candidate:
            raise ServiceError(
                400, "username is required. Provide it in the query or CHESSCOM_USERNAME env."
            )
        return normalize_username(candidate)

    def _filtered(self, filters: StatsFilters) -> tuple[str, list[GameDetail]]:
        """Resolve the player and apply the common filters, oldest first."""
        username = self.resolve_username(filters.username)
        if not self._store.has_player(username):
            raise ServiceError(404, f"Player '{username}' has not been synced yet")

        games = []
        for game in self._store.games_for(username):
            end_ts = int(game.end_time.timestamp())
            if filters.time_class is not None and game.time_class != filters.time_class:
                continue
            if filters.from_ts is not None and end_ts < filters.from_ts:
                continue
            if filters.to_ts is not None and end_ts > filters.to_ts:
                continue
            games.append(game)
        return username, games

    async def summary(self, filters: StatsFilters) -> SummaryResponse:
        username, games = self._filtered(filters)

        by_class: dict = {}
        for game in games:
            by_class.setdefault(game.time_class, []).append(game)

        breakdown = []
        for time_class, class_games in sorted(by_class.items(), key=lambda kv: kv[0].value):
            rated = [g.rating for g in class_games if g.rating is not None]
            breakdown.append(
                TimeClassSummary(
                    time_class=time_class,
                    latest_rating=rated[-1] if rated else None,
                    **tally(class_games).model_dump(),
                )
            )

        return SummaryResponse(
            username=username,
            by_time_class=breakdown,
            **tally(games).model_dump(),
        )

    async def rating_series(self, filters: StatsFilters) -> RatingSeriesResponse:
        username, games = self._filtered(filters)
        points = [
            RatingPoint(
                game_id=game.id,
                time=game.end_time,
                time_class=game.time_class,
                rating=game.rating,
            )
            for game in games
            if game.rating
        ]
        return RatingSeriesResponse(username=username, points=points)

    async def openings(
        self, filters: StatsFilters, min_games: int = 10
    ) -> OpeningsResponse:
        username, games = self._filtered(filters)
        min_games = max(1, min_games)

        grouped: dict[str, list[GameDetail]] = {}
        for game in games:
            grouped.setdefault(game.opening or UNKNOWN_OPENING, []).append(game)

        openings = [
            OpeningStats(opening=name, **tally(group).model_dump())
            for name, group in grouped.items()
            if len(group) >= min_games
        ]
        openings.sort(key=lambda o: (-o.games, o.opening))
        return OpeningsResponse(username=username, openings=openings)

    async def streaks(self, filters: StatsFilters) -> StreaksResponse:
        username, games = self._filtered(filters)
        results = [game.result for game in games]

        longest_win = longest_loss = 0
        run_win = run_loss = 0
        for result in results:
            run_win = run_win + 1 if result == GameResult.win else 0
            run_loss = run_loss + 1 if result == GameResult.loss else 0
            longest_win = max(longest_win, run_win)
            longest_loss = max(longest_loss, run_loss)

        current = CurrentStreak()
        if results:
            last = results[-1]
            length = 0
            for result in reversed(results):
                if result != last:
                    break
                length += 1
            current = CurrentStreak(result=last.value, length=length)

        return StreaksResponse(
            username=username,
            total_games=len(results),
            longest_win_streak=longest_win,
            longest_loss_streak=longest_loss,
            current_streak=current,
            tilt_index=TiltIndex(
                after_1_loss=tilt_slice(results, 1),
                after_2_losses=tilt_slice(results, 2),
                after_3_losses=tilt_slice(results, 3),
            ),
        )

    async def time_heatmap(self, filters: StatsFilters) -> HeatmapResponse:
        """Weekday x hour (UTC) record; every one of the 168 cells is present."""
        username, games = self._filtered(filters)

        buckets: dict[tuple[int, int], list[GameDetail]] = {}
        for game in games:
            end = game.end_time.astimezone(timezone.utc)
            buckets.setdefault((end.isoweekday() % 7, end.hour), []).append(game)

        cells = [
            HeatmapCell(
                weekday=weekday,
                hour=hour,
                **tally(buckets.get((weekday, hour), [])).model_dump(),
            )
            for weekday in range(7)
            for hour in range(24)
        ]
        return HeatmapResponse(username=username, cells=cells)

    async def games(self, filters: GamesFilters) -> GameListResponse:
        """Filtered games, newest first, one page at a time."""
        username, games = self._filtered(filters)
        eco = (filters.eco or "").lower()
        search = (filters.search or "").lower()

        matched = []
        for game in reversed(games):
            if filters.result is not None and game.result != filters.result:
                continue
            if filters.color is not None and game.color != filters.color:
                continue
            if eco and eco not in (game.opening or "").lower():
                continue
            if search and not (
                search in game.opponent.lower() or search in (game.opening or "").lower()
            ):
                continue
            matched.append(game)

        start = (filters.page - 1) * filters.page_size
        page = matched[start : start + filters.page_size]
        return GameListResponse(
            username=username,
            items=[GameSummary(**g.model_dump(exclude={"pgn"})) for g in page],
            page=filters.page,
            page_size=filters.page_size,
            total=len(matched),
        )

    async def game_detail(self, game_id: int, username: Optional[str] = None) -> GameDetail:
        game = self._store.get(game_id)
        if username is not None and username.strip():
            wanted = normalize_username(username)
        else:
            wanted = None
        if game is None or (wanted is not None and game.username != wanted):
            raise ServiceError(404, f"Game {game_id} not found")
        return game
