"""
Shared test fixtures for chess-stats-api.

Provides:
- A controllable clock for cache timing
- Starlette request builder for driving the cache without a server
- Chess.com game / archive payload builders
- Fake Chess.com server for client and E2E tests
"""

from typing import Optional

import pytest
from pytest_httpserver import HTTPServer
from starlette.requests import Request

PLAYER = "magnus"
BASE_END_TIME = 1_700_000_000


class FakeClock:
    """Controllable clock for deterministic cache tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_request(
    path: str = "/api/stats/summary",
    query: str = "",
    headers: Optional[dict] = None,
    path_params: Optional[dict] = None,
) -> Request:
    """Build a bare GET request; enough for key building and header reads."""
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": query.encode("latin-1"),
        "headers": raw_headers,
        "path_params": path_params or {},
    }
    return Request(scope)


def chesscom_game(
    n: int = 1,
    player: str = PLAYER,
    color: str = "white",
    result: str = "win",
    opponent: str = "hikaru",
    rating: int = 1500,
    opponent_rating: int = 1480,
    time_class: str = "blitz",
    eco: str = "https://www.chess.com/openings/Sicilian-Defense",
    end_time: Optional[int] = None,
) -> dict:
    """One game in the shape of a Chess.com monthly archive entry."""
    if result == "win":
        opponent_result = "resigned"
    elif result in ("agreed", "repetition", "stalemate"):
        opponent_result = result
    else:
        opponent_result = "win"
    own = {"username": player, "rating": rating, "result": result}
    other = {"username": opponent, "rating": opponent_rating, "result": opponent_result}
    white, black = (own, other) if color == "white" else (other, own)
    return {
        "url": f"https://www.chess.com/game/live/{n}",
        "pgn": f"[Event \"Live Chess\"]\n1. e4 c5 {n}",
        "time_control": "180",
        "end_time": end_time if end_time is not None else BASE_END_TIME + n * 60,
        "rated": True,
        "time_class": time_class,
        "rules": "chess",
        "eco": eco,
        "white": white,
        "black": black,
    }


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def fake_chesscom():
    """A real HTTP server impersonating the Chess.com published-data API."""
    server = HTTPServer(host="127.0.0.1")
    server.start()
    yield server
    server.clear()
    if server.is_running():
        server.stop()


def server_base_url(server: HTTPServer) -> str:
    return f"http://{server.host}:{server.port}"
