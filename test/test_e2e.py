"""
End-to-end tests: real HTTP servers, real chess-stats app, fake Chess.com.

Each test uses real httpx calls against running servers.
Nothing is mocked in-process.
"""

import os
import socket
import time
from contextlib import asynccontextmanager
from threading import Thread

import httpx
import pytest
import uvicorn
from pytest_httpserver import HTTPServer

from conftest import PLAYER, chesscom_game, server_base_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _archive_path(month: str) -> str:
    return f"/player/{PLAYER}/games/{month}"


def _serve_history(server: HTTPServer, months: dict) -> None:
    """Register archive listing plus one monthly archive per entry in months."""
    base = server_base_url(server)
    server.clear()
    server.expect_request(f"/player/{PLAYER}/games/archives").respond_with_json(
        {"archives": [f"{base}{_archive_path(m)}" for m in months]}
    )
    for month, games in months.items():
        server.expect_request(_archive_path(month)).respond_with_json({"games": games})


def _find_free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _start_chess_stats(config_path: str, env_overrides: dict = None):
    """
    Start a chess-stats server by setting globals on the app module directly.
    Returns (base_url, uvicorn_server, thread, app_module).
    """
    env = env_overrides or {}
    os.environ["CONFIG_PATH"] = config_path
    for k, v in env.items():
        os.environ[k] = v

    from chess_stats.cache import ResponseCache
    from chess_stats.chesscom_client import ChessComClient
    from chess_stats.config import load_config
    from chess_stats.games import GameStore
    from chess_stats.stats import StatsService
    from chess_stats.sync import SyncService
    import chess_stats.app as app_module

    config = load_config(config_path)

    # The httpx client stays open until the server shuts down.
    http_client = httpx.AsyncClient()
    chesscom = ChessComClient(
        http_client=http_client,
        user_agent=config.user_agent,
        rate_limit_ms=config.rate_limit_ms,
        concurrency=config.concurrency,
        base_url=config.chesscom_base_url,
    )
    store = GameStore()
    cache = ResponseCache(max_entries=config.cache_max_entries)

    # Set globals directly -- skip lifespan
    app_module._config = config
    app_module._cache = cache
    app_module._stats_service = StatsService(config=config, store=store)
    app_module._sync_service = SyncService(config=config, chesscom_client=chesscom, store=store)

    port = _find_free_port()

    @asynccontextmanager
    async def noop_lifespan(app):
        yield
        await cache.refreshes.wait_idle()
        await http_client.aclose()

    app_module.app.router.lifespan_context = noop_lifespan

    uvi_config = uvicorn.Config(
        app_module.app, host="127.0.0.1", port=port, log_level="warning"
    )
    server = uvicorn.Server(uvi_config)
    thread = Thread(target=server.run, daemon=True)
    thread.start()

    base_url = f"http://127.0.0.1:{port}"
    for _ in range(100):
        try:
            httpx.get(f"{base_url}/health", timeout=1.0)
            break
        except (httpx.ConnectError, httpx.ReadError, httpx.ConnectTimeout):
            time.sleep(0.1)
    else:
        pytest.fail("Chess stats server did not start")

    return base_url, server, thread, app_module


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def fake_chesscom_module():
    server = HTTPServer(host="127.0.0.1")
    server.start()
    yield server
    server.clear()
    if server.is_running():
        server.stop()


@pytest.fixture(scope="module")
def chess_stats(fake_chesscom_module, tmp_path_factory):
    tmp_path = tmp_path_factory.mktemp("e2e")
    config_content = f"""\
chesscom_base_url: "{server_base_url(fake_chesscom_module)}"
rate_limit_ms: 10
cache_policies:
  stats-summary:
    max_age_seconds: 1
    stale_while_revalidate_seconds: 60
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    base_url, server, thread, app_mod = _start_chess_stats(
        str(config_path), {"CHESSCOM_USERNAME": PLAYER}
    )

    yield base_url, fake_chesscom_module, app_mod

    server.should_exit = True
    thread.join(timeout=5)
    app_mod._config = None
    app_mod._cache = None
    app_mod._stats_service = None
    app_mod._sync_service = None
    os.environ.pop("CHESSCOM_USERNAME", None)


# ---------------------------------------------------------------------------
# E2E Tests
# ---------------------------------------------------------------------------

@pytest.mark.e2e
class TestE2E:

    def test_health(self, chess_stats):
        base_url, _, _ = chess_stats
        resp = httpx.get(f"{base_url}/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    def test_summary_before_sync_is_404(self, chess_stats):
        base_url, _, app_mod = chess_stats
        app_mod._cache.clear()
        resp = httpx.get(f"{base_url}/api/stats/summary?username=nobody")
        assert resp.status_code == 404

    def test_sync_then_cached_reads(self, chess_stats):
        base_url, fake, app_mod = chess_stats
        app_mod._cache.clear()
        _serve_history(fake, {
            "2024/01": [chesscom_game(1), chesscom_game(2, result="checkmated")],
            "2024/02": [chesscom_game(3, result="agreed")],
        })

        sync = httpx.post(f"{base_url}/api/sync", json={}, timeout=10.0)
        assert sync.status_code == 200
        assert sync.headers["x-cache"] == "BYPASS"
        assert sync.json()["games_imported"] == 3

        first = httpx.get(f"{base_url}/api/stats/summary")
        assert first.status_code == 200
        assert first.headers["x-cache"] == "MISS"
        assert first.json()["games"] == 3

        second = httpx.get(f"{base_url}/api/stats/summary")
        assert second.headers["x-cache"] == "HIT"
        assert second.headers["etag"] == first.headers["etag"]

        not_modified = httpx.get(
            f"{base_url}/api/stats/summary",
            headers={"If-None-Match": first.headers["etag"]},
        )
        assert not_modified.status_code == 304

    def test_resync_invalidates(self, chess_stats):
        base_url, fake, app_mod = chess_stats
        app_mod._cache.clear()
        _serve_history(fake, {"2024/01": [chesscom_game(1)]})
        httpx.post(f"{base_url}/api/sync", json={}, timeout=10.0)
        before = httpx.get(f"{base_url}/api/games")
        assert before.headers["x-cache"] == "MISS"
        assert httpx.get(f"{base_url}/api/games").headers["x-cache"] == "HIT"

        _serve_history(fake, {"2024/01": [chesscom_game(1), chesscom_game(4)]})
        httpx.post(f"{base_url}/api/sync", json={}, timeout=10.0)

        after = httpx.get(f"{base_url}/api/games")
        assert after.headers["x-cache"] == "MISS"
        assert after.json()["total"] > before.json()["total"]
        assert after.headers["etag"] != before.headers["etag"]

    def test_stale_then_refreshed(self, chess_stats):
        base_url, fake, app_mod = chess_stats
        app_mod._cache.clear()
        _serve_history(fake, {"2024/01": [chesscom_game(1)]})
        httpx.post(f"{base_url}/api/sync", json={}, timeout=10.0)

        httpx.get(f"{base_url}/api/stats/summary")
        time.sleep(1.5)
        stale = httpx.get(f"{base_url}/api/stats/summary")
        assert stale.status_code == 200
        assert stale.headers["x-cache"] == "STALE"

        for _ in range(50):
            if httpx.get(f"{base_url}/api/stats/summary").headers["x-cache"] == "HIT":
                break
            time.sleep(0.05)
        else:
            pytest.fail("Background refresh did not replace the stale entry")

    def test_upstream_player_missing(self, chess_stats):
        base_url, fake, _ = chess_stats
        fake.clear()
        fake.expect_request("/player/ghost/games/archives").respond_with_json(
            {"code": 0, "message": "not found"}, status=404
        )
        resp = httpx.post(f"{base_url}/api/sync", json={"username": "ghost"}, timeout=10.0)
        assert resp.status_code == 404
        assert "error" in resp.json()

    def test_cache_status(self, chess_stats):
        base_url, _, _ = chess_stats
        resp = httpx.get(f"{base_url}/api/cache/status")
        assert resp.status_code == 200
        assert set(resp.json()) == {"entries", "fresh", "stale"}
