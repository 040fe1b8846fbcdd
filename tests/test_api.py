import functools
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from overachiever import main
from overachiever.database import get_session, init_db
from overachiever.routers import sync, ws
from overachiever.services.sync_engine import SyncEngine
from overachiever.services.sync_runner import SyncRunner
from overachiever.settings import settings

from helpers import STEAM_ID, owned, progress, schema

HEADERS = {"X-Steam-Id": STEAM_ID}


@pytest.fixture(name="api")
def api_fixture(monkeypatch, steam_client):
    """
    App wired to an in-memory database and a mocked Steam client. The engine
    is first used inside the app's own event loop (via the lifespan).
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_session():
        async with factory() as session:
            yield session

    runner = SyncRunner(
        engine_factory=lambda s: SyncEngine(
            s, client=steam_client, session_factory=factory, scrape_delay=0
        )
    )

    monkeypatch.setattr(main, "init_db", functools.partial(init_db, engine))
    monkeypatch.setattr(ws, "AsyncSessionLocal", factory)
    monkeypatch.setattr(sync, "sync_runner", runner)
    monkeypatch.setattr(settings, "STEAM_API_KEY", "test-key")
    monkeypatch.setattr(settings, "STEAM_ID", "")
    monkeypatch.setattr(settings, "API_SECRET_KEY", "")
    monkeypatch.setattr(settings, "UPDATE_INTERVAL_HOURS", 0)
    main.app.dependency_overrides[get_session] = override_session

    with TestClient(main.app) as client:
        yield client
        client.portal.call(engine.dispose)

    main.app.dependency_overrides.clear()


def _library(steam_client):
    steam_client.get_owned_games.return_value = [
        owned(1, name="Alpha", playtime=30),
        owned(2, name="Beta", playtime=0),
    ]
    steam_client.get_recently_played.return_value = [1]
    steam_client.get_player_achievements.return_value = [progress("A"), progress("B", False)]
    steam_client.get_schema_for_game.return_value = [schema("A"), schema("B")]


def test_root(api):
    assert api.get("/").json() == {"message": "Overachiever is running"}


def test_requests_need_a_steam_id(api):
    response = api.get("/games")
    assert response.status_code == 401


def test_api_key_enforced_when_configured(api, monkeypatch):
    monkeypatch.setattr(settings, "API_SECRET_KEY", "s3cret")

    assert api.get("/games", headers=HEADERS).status_code == 401
    assert api.get("/games", headers={**HEADERS, "X-API-Key": "wrong"}).status_code == 403
    assert api.get("/games", headers={**HEADERS, "X-API-Key": "s3cret"}).status_code == 200


def test_update_then_read_back(api, steam_client):
    _library(steam_client)

    response = api.post("/sync/update", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "update started"

    # Background task has finished by the time TestClient returns
    events = api.get("/sync/events", headers=HEADERS).json()
    assert [e["state"] for e in events] == [
        "Starting",
        "FetchingGames",
        "FetchingRecentlyPlayed",
        "ScrapingAchievements",
        "GameUpdated",
        "Done",
    ]
    assert events[-1]["summary"] == {"games_updated": 1, "achievements_updated": 2, "new_games": 2}
    assert api.get("/sync/events", headers=HEADERS).json() == []

    games = api.get("/games", headers=HEADERS).json()
    assert [(g["appid"], g["achievements_total"]) for g in games] == [(1, 2), (2, None)]

    achievements = api.get("/games/1/achievements", headers=HEADERS).json()
    assert [(a["apiname"], a["achieved"]) for a in achievements] == [("A", True), ("B", False)]

    status = api.get("/sync/status", headers=HEADERS).json()
    assert status["is_running"] is False
    assert status["last_summary"]["games_updated"] == 1
    assert status["last_update"] is not None
    assert status["is_stale"] is False
    assert status["needs_scrape"] == 1
    assert status["can_full_scan"] is True


def test_stats_toggle_unplayed(api, steam_client):
    _library(steam_client)
    steam_client.get_recently_played.return_value = [1, 2]
    steam_client.get_player_achievements.side_effect = lambda steam_id, appid: (
        [progress("A"), progress("B")] if appid == 1 else []
    )
    api.post("/sync/update", headers=HEADERS)

    stats = api.get("/stats", headers=HEADERS).json()
    assert stats["avg_completion_percent"] == pytest.approx(100.0)
    assert stats["unplayed_games_with_achievements"] == 1

    stats = api.get("/stats", params={"include_unplayed": True}, headers=HEADERS).json()
    assert stats["avg_completion_percent"] == pytest.approx(50.0)


def test_full_scan_enablement(api, steam_client):
    steam_client.get_owned_games.return_value = [owned(1)]
    api.post("/sync/full-scan", headers=HEADERS)

    status = api.get("/sync/status", headers=HEADERS).json()
    assert status["needs_scrape"] == 0
    assert status["can_full_scan"] is False
    # Never updated: only a forced full scan records the update time
    assert status["is_stale"] is True

    forced = api.get("/sync/status", params={"force": True}, headers=HEADERS).json()
    assert forced["can_full_scan"] is True


def test_history(api, steam_client):
    _library(steam_client)
    api.post("/sync/update", headers=HEADERS)

    history = api.get("/history", headers=HEADERS).json()
    assert [r["total_games"] for r in history["run_history"]] == [2]
    assert len(history["achievement_history"]) == 1
    assert [e["type"] for e in history["log_entries"]] == ["Achievement"]


def test_unknown_game_is_404(api):
    assert api.get("/games/404", headers=HEADERS).status_code == 404
    assert api.get("/games/404/achievements", headers=HEADERS).status_code == 404


def test_cancel_without_running_sync(api):
    assert api.post("/sync/cancel", headers=HEADERS).status_code == 409


def test_busy_user_cannot_start_second_flow(api):
    sync.sync_runner.state_for(STEAM_ID).is_running = True
    sync.sync_runner.state_for(STEAM_ID).flow = "update"

    assert api.post("/sync/full-scan", headers=HEADERS).status_code == 409


def test_missing_api_key_surfaces_as_error_event(api, monkeypatch, steam_client):
    monkeypatch.setattr(settings, "STEAM_API_KEY", "")

    api.post("/sync/update", headers=HEADERS)

    events = api.get("/sync/events", headers=HEADERS).json()
    assert events[-1] == {"state": "Error", "message": "Steam API key is not configured"}
    steam_client.get_owned_games.assert_not_called()


def test_websocket_requires_authentication(api):
    with api.websocket_connect("/ws") as socket:
        socket.send_json({"type": "Ping"})
        assert socket.receive_json() == {"type": "Pong"}

        socket.send_json({"type": "FetchGames"})
        assert socket.receive_json() == {"type": "AuthError", "reason": "Not authenticated"}

        socket.send_json({"type": "Dance"})
        assert socket.receive_json()["type"] == "Error"


def test_websocket_sync_streams_progress(api, steam_client):
    _library(steam_client)

    with api.websocket_connect("/ws") as socket:
        socket.send_json({"type": "Authenticate", "steam_id": STEAM_ID})
        assert socket.receive_json() == {"type": "Authenticated", "steam_id": STEAM_ID}

        socket.send_json({"type": "SyncFromSteam"})
        messages = []
        while True:
            message = socket.receive_json()
            messages.append(message)
            if message["type"] in ("SyncComplete", "Error"):
                break

        assert [m["type"] for m in messages[:-1]] == ["SyncProgress"] * 5
        assert [m["state"]["state"] for m in messages[:-1]] == [
            "Starting",
            "FetchingGames",
            "FetchingRecentlyPlayed",
            "ScrapingAchievements",
            "GameUpdated",
        ]
        scraping = messages[3]["state"]
        assert (scraping["current"], scraping["total"], scraping["game_name"]) == (1, 1, "Alpha")

        complete = messages[-1]
        assert complete["type"] == "SyncComplete"
        assert complete["result"] == {"games_updated": 1, "achievements_updated": 2, "new_games": 2}
        assert len(complete["games"]) == 2

        socket.send_json({"type": "FetchAchievements", "appid": 1})
        achievements = socket.receive_json()
        assert achievements["type"] == "Achievements"
        assert len(achievements["achievements"]) == 2

        socket.send_json({"type": "FetchHistory"})
        history = socket.receive_json()
        assert history["type"] == "History"
        assert len(history["run_history"]) == 1


def test_websocket_rejects_bad_token(api, monkeypatch):
    monkeypatch.setattr(settings, "API_SECRET_KEY", "s3cret")

    with api.websocket_connect("/ws") as socket:
        socket.send_json({"type": "Authenticate", "steam_id": STEAM_ID, "token": "nope"})
        assert socket.receive_json() == {"type": "AuthError", "reason": "Invalid token"}

        socket.send_json({"type": "Authenticate", "steam_id": STEAM_ID, "token": "s3cret"})
        assert socket.receive_json()["type"] == "Authenticated"


def test_ratings_round_trip(api):
    assert api.get("/games/620/ratings").json() == {
        "appid": 620,
        "avg_rating": 0.0,
        "rating_count": 0,
        "ratings": [],
    }

    response = api.post("/games/620/ratings", headers=HEADERS, json={"rating": 4, "comment": "Fun"})
    assert response.status_code == 201
    assert response.json()["steam_id"] == STEAM_ID

    other = {"X-Steam-Id": "76561197960287931"}
    api.post("/games/620/ratings", headers=other, json={"rating": 1})
    # Resubmitting replaces the earlier rating
    api.post("/games/620/ratings", headers=HEADERS, json={"rating": 5})

    summary = api.get("/games/620/ratings").json()
    assert summary["rating_count"] == 2
    assert summary["avg_rating"] == 3.0


def test_rating_must_be_one_to_five(api):
    response = api.post("/games/620/ratings", headers=HEADERS, json={"rating": 9})
    assert response.status_code == 422

    assert api.post("/games/620/ratings", json={"rating": 3}).status_code == 401


def test_websocket_ratings(api):
    with api.websocket_connect("/ws") as socket:
        socket.send_json({"type": "Authenticate", "steam_id": STEAM_ID})
        socket.receive_json()

        socket.send_json({"type": "SubmitRating", "appid": 620, "rating": 4, "comment": "Fun"})
        assert socket.receive_json() == {"type": "RatingSubmitted", "appid": 620}

        socket.send_json({"type": "SubmitRating", "appid": 620, "rating": 0})
        assert socket.receive_json()["type"] == "Error"

        socket.send_json({"type": "GetCommunityRatings", "appid": 620})
        ratings = socket.receive_json()
        assert ratings["type"] == "CommunityRatings"
        assert (ratings["avg_rating"], ratings["rating_count"]) == (4.0, 1)
        assert ratings["ratings"][0]["comment"] == "Fun"
