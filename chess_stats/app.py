"""
FastAPI application for chess-stats-api.

Lifespan manages the httpx client, Chess.com client, game store, services
and the shared response cache.
Routes: /health, /api/sync, /api/sync/status, /api/stats/*, /api/games,
/api/games/{id}, /api/cache/status.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx
from fastapi import Body, Depends, FastAPI, HTTPException, Path, Query, Request, Response
from fastapi.responses import JSONResponse

from chess_stats.cache import ResponseCache, build_cache_key
from chess_stats.cached_response import CacheConfig, cached_json_response
from chess_stats.chesscom_client import ChessComClient, ChessComError, ChessComHttpError
from chess_stats.config import AppConfig, load_config
from chess_stats.errors import ServiceError
from chess_stats.games import GameStore
from chess_stats.models import (
    CacheStatsResponse,
    Color,
    GameDetail,
    GameListResponse,
    GameResult,
    GamesFilters,
    HeatmapResponse,
    OpeningsResponse,
    RatingSeriesResponse,
    StatsFilters,
    StreaksResponse,
    SummaryResponse,
    SyncRequest,
    SyncResult,
    SyncStatus,
    TimeClass,
)
from chess_stats.stats import StatsService
from chess_stats.sync import SyncService

logger = logging.getLogger(__name__)

SYNC_INVALIDATION_TAGS = ("stats", "games", "sync-status")

# Global references set during lifespan
_config: Optional[AppConfig] = None
_cache: Optional[ResponseCache] = None
_stats_service: Optional[StatsService] = None
_sync_service: Optional[SyncService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load config, create HTTP client, cache and services."""
    global _config, _cache, _stats_service, _sync_service

    # Configure logging
    log_level = os.environ.get("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    _config = load_config()
    logger.info(
        "Loaded config: environment=%s, cache_max_entries=%d, rate_limit_ms=%d, concurrency=%d",
        _config.environment,
        _config.cache_max_entries,
        _config.rate_limit_ms,
        _config.concurrency,
    )

    async with httpx.AsyncClient() as http_client:
        chesscom = ChessComClient(
            http_client=http_client,
            user_agent=_config.user_agent,
            rate_limit_ms=_config.rate_limit_ms,
            concurrency=_config.concurrency,
            base_url=_config.chesscom_base_url,
        )
        store = GameStore()
        _cache = ResponseCache(max_entries=_config.cache_max_entries)
        _stats_service = StatsService(config=_config, store=store)
        _sync_service = SyncService(config=_config, chesscom_client=chesscom, store=store)
        logger.info("Chess stats API ready")
        yield
        await _cache.refreshes.wait_idle()

    _config = None
    _cache = None
    _stats_service = None
    _sync_service = None


app = FastAPI(
    title="Chess Stats API",
    version="1.0.0",
    description="""
Statistics over a Chess.com player's game history.

## Caching

Read endpoints are served through an in-memory stale-while-revalidate cache:

- `X-Cache: HIT` fresh copy, `STALE` old copy while a background refresh runs,
  `MISS` computed for this request
- `ETag` on every cached response; send it back in `If-None-Match` for a `304`
- `POST /api/sync` imports new games and invalidates cached stats and games
    """.strip(),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "stats", "description": "Aggregated statistics"},
        {"name": "games", "description": "Imported games"},
        {"name": "sync", "description": "Import from Chess.com"},
        {"name": "health", "description": "Service health and diagnostics"},
    ],
    docs_url="/docs",
    redoc_url="/redoc",
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_config() -> AppConfig:
    if _config is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _config


def get_cache() -> ResponseCache:
    if _cache is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _cache


def get_stats_service() -> StatsService:
    if _stats_service is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _stats_service


def get_sync_service() -> SyncService:
    if _sync_service is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _sync_service


def stats_filters(
    username: Optional[str] = Query(default=None, min_length=1),
    time_class: Optional[TimeClass] = Query(default=None),
    from_ts: Optional[int] = Query(default=None, alias="from", gt=0),
    to_ts: Optional[int] = Query(default=None, alias="to", gt=0),
) -> StatsFilters:
    return StatsFilters(
        username=username, time_class=time_class, from_ts=from_ts, to_ts=to_ts
    )


def games_filters(
    common: StatsFilters = Depends(stats_filters),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    result: Optional[GameResult] = Query(default=None),
    color: Optional[Color] = Query(default=None),
    eco: Optional[str] = Query(default=None, min_length=1),
    search: Optional[str] = Query(default=None, min_length=1),
) -> GamesFilters:
    return GamesFilters(
        **common.model_dump(),
        page=page,
        page_size=page_size,
        result=result,
        color=color,
        eco=eco,
        search=search,
    )


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(ChessComError)
async def chesscom_error_handler(request: Request, exc: ChessComError) -> JSONResponse:
    status_code = 502
    if isinstance(exc, ChessComHttpError) and exc.status_code == 404:
        status_code = 404
    return JSONResponse(status_code=status_code, content={"error": str(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ---------------------------------------------------------------------------
# Cached responses
# ---------------------------------------------------------------------------


async def _cached(
    request: Request,
    route_id: str,
    tags: tuple[str, ...],
    producer: Callable[[], Awaitable[Any]],
    extra: Optional[Mapping[str, Any]] = None,
) -> Response:
    """Serve producer() through the shared cache using route_id's policy."""
    policy = get_config().cache_policy(route_id)
    cache_config = CacheConfig(
        key=build_cache_key(route_id, request, extra),
        max_age_seconds=policy.max_age_seconds,
        stale_while_revalidate_seconds=policy.stale_while_revalidate_seconds,
        tags=tags,
    )

    def on_background_error(exc: BaseException) -> None:
        logger.warning("%s background refresh failed: %s", route_id, exc, exc_info=exc)

    return await cached_json_response(
        request, get_cache(), cache_config, producer, on_background_error
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health", tags=["health"], summary="Health check")
async def health():
    """Always returns HTTP 200 with a simple JSON response."""
    return {"status": "healthy"}


@app.post(
    "/api/sync",
    response_model=SyncResult,
    tags=["sync"],
    summary="Import games from Chess.com",
)
async def post_sync(
    response: Response,
    body: Optional[SyncRequest] = Body(default=None),
    sync: SyncService = Depends(get_sync_service),
    cache: ResponseCache = Depends(get_cache),
):
    """
    Fetch the player's monthly archives and import their games.

    Never cached. On success every cached stats, games and sync-status
    response is invalidated.
    """
    body = body or SyncRequest()
    result = await sync.run_sync(username=body.username, full=body.full)
    cache.invalidate_tags(SYNC_INVALIDATION_TAGS)
    response.headers["Cache-Control"] = "no-store"
    response.headers["X-Cache"] = "BYPASS"
    return result


@app.get(
    "/api/sync/status",
    response_model=SyncStatus,
    tags=["sync"],
    summary="Sync status",
)
async def get_sync_status(
    request: Request,
    username: Optional[str] = Query(default=None, min_length=1),
    sync: SyncService = Depends(get_sync_service),
):
    return await _cached(
        request, "sync-status", ("sync-status",), lambda: sync.status(username)
    )


@app.get(
    "/api/stats/summary",
    response_model=SummaryResponse,
    tags=["stats"],
    summary="Win/loss/draw summary",
)
async def get_summary(
    request: Request,
    filters: StatsFilters = Depends(stats_filters),
    stats: StatsService = Depends(get_stats_service),
):
    return await _cached(
        request, "stats-summary", ("stats",), lambda: stats.summary(filters)
    )


@app.get(
    "/api/stats/rating-series",
    response_model=RatingSeriesResponse,
    tags=["stats"],
    summary="Rating over time",
)
async def get_rating_series(
    request: Request,
    filters: StatsFilters = Depends(stats_filters),
    stats: StatsService = Depends(get_stats_service),
):
    return await _cached(
        request, "stats-rating-series", ("stats",), lambda: stats.rating_series(filters)
    )


@app.get(
    "/api/stats/openings",
    response_model=OpeningsResponse,
    tags=["stats"],
    summary="Results per opening",
)
async def get_openings(
    request: Request,
    filters: StatsFilters = Depends(stats_filters),
    min_games: int = Query(default=10, ge=1),
    stats: StatsService = Depends(get_stats_service),
):
    return await _cached(
        request,
        "stats-openings",
        ("stats",),
        lambda: stats.openings(filters, min_games=min_games),
    )


@app.get(
    "/api/stats/streaks",
    response_model=StreaksResponse,
    tags=["stats"],
    summary="Win/loss streaks and tilt index",
)
async def get_streaks(
    request: Request,
    filters: StatsFilters = Depends(stats_filters),
    stats: StatsService = Depends(get_stats_service),
):
    return await _cached(
        request, "stats-streaks", ("stats",), lambda: stats.streaks(filters)
    )


@app.get(
    "/api/stats/time-heatmap",
    response_model=HeatmapResponse,
    tags=["stats"],
    summary="Results by weekday and hour (UTC)",
)
async def get_time_heatmap(
    request: Request,
    filters: StatsFilters = Depends(stats_filters),
    stats: StatsService = Depends(get_stats_service),
):
    return await _cached(
        request, "stats-time-heatmap", ("stats",), lambda: stats.time_heatmap(filters)
    )


@app.get(
    "/api/games",
    response_model=GameListResponse,
    tags=["games"],
    summary="List games",
)
async def get_games(
    request: Request,
    filters: GamesFilters = Depends(games_filters),
    stats: StatsService = Depends(get_stats_service),
):
    return await _cached(request, "games-list", ("games",), lambda: stats.games(filters))


@app.get(
    "/api/games/{game_id}",
    response_model=GameDetail,
    tags=["games"],
    summary="Single game with PGN",
    responses={404: {"description": "Game not found"}},
)
async def get_game(
    request: Request,
    game_id: int = Path(gt=0),
    username: Optional[str] = Query(default=None, min_length=1),
    stats: StatsService = Depends(get_stats_service),
):
    return await _cached(
        request,
        "games-detail",
        ("games",),
        lambda: stats.game_detail(game_id, username),
        extra={"id": game_id},
    )


@app.get(
    "/api/cache/status",
    response_model=CacheStatsResponse,
    tags=["health"],
    summary="Response cache counters (non-production only)",
)
async def get_cache_status(
    config: AppConfig = Depends(get_config),
    cache: ResponseCache = Depends(get_cache),
):
    if config.is_production:
        raise HTTPException(status_code=404, detail="Not Found")
    return cache.stats()
