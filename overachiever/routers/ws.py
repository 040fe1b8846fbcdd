import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from overachiever.database import AsyncSessionLocal
from overachiever.errors import StoreError
from overachiever.events import CallbackObserver, SyncEvent
from overachiever.messages import (
    Achievements,
    Authenticate,
    Authenticated,
    AuthError,
    CommunityRatings,
    ErrorMessage,
    FetchAchievements,
    FetchGames,
    FullScan,
    Games,
    GetCommunityRatings,
    History,
    Ping,
    Pong,
    RatingSubmitted,
    ServerMessage,
    SubmitRating,
    SyncFromSteam,
    client_message_adapter,
    to_server_message,
)
from overachiever.models import GameRead
from overachiever.routers.auth import api_key_matches
from overachiever.routers import sync
from overachiever.services.store import AchievementStore
from overachiever.services.sync_engine import SyncSession
from overachiever.services.sync_runner import FULL_SCAN, UPDATE, SyncBusy
from overachiever.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()

NOT_AUTHENTICATED = "Not authenticated"


async def _send(websocket: WebSocket, message: ServerMessage):
    await websocket.send_text(message.model_dump_json())


async def _query(steam_id: str, message) -> ServerMessage:
    async with AsyncSessionLocal() as session:
        store = AchievementStore(session)
        if isinstance(message, FetchGames):
            games = await store.get_all_games(steam_id)
            return Games(games=[GameRead.model_validate(g) for g in games])
        if isinstance(message, FetchAchievements):
            achievements = await store.get_game_achievements(steam_id, message.appid)
            return Achievements(appid=message.appid, achievements=achievements)
        if isinstance(message, GetCommunityRatings):
            summary = await store.get_community_ratings(message.appid)
            return CommunityRatings(
                appid=summary.appid,
                avg_rating=summary.avg_rating,
                rating_count=summary.rating_count,
                ratings=summary.ratings,
            )
        if isinstance(message, SubmitRating):
            await store.submit_rating(steam_id, message.appid, message.rating, message.comment)
            await store.commit()
            logger.info("Rating submitted", extra={"steam_id": steam_id, "appid": message.appid})
            return RatingSubmitted(appid=message.appid)
        # FetchHistory
        return History(
            run_history=await store.get_run_history(steam_id),
            achievement_history=await store.get_achievement_history(steam_id),
            log_entries=await store.get_log_entries(steam_id, settings.LOG_ENTRY_LIMIT),
        )


async def _sync(websocket: WebSocket, steam_id: str, flow: str, force: bool = False):
    connected = True

    # The flow keeps going if the client leaves; its events are just dropped
    async def forward(event: SyncEvent):
        nonlocal connected
        if not connected:
            return
        try:
            await _send(websocket, to_server_message(event))
        except (WebSocketDisconnect, RuntimeError):
            connected = False
            logger.info(
                "Client left during sync, dropping events",
                extra={"steam_id": steam_id, "flow": flow},
            )

    try:
        await sync.sync_runner.run(
            SyncSession.from_settings(steam_id),
            flow,
            force=force,
            observer=CallbackObserver(forward),
        )
    except SyncBusy as e:
        await _send(websocket, ErrorMessage(message=str(e)))


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    One connection per client. Sync requests run inline: progress is pushed
    as it happens and the next client message is read once the flow ends.
    """
    await websocket.accept()
    steam_id: Optional[str] = None

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = client_message_adapter.validate_json(raw)
            except ValidationError as e:
                await _send(websocket, ErrorMessage(message=f"Invalid message: {e}"))
                continue

            if isinstance(message, Ping):
                await _send(websocket, Pong())
                continue

            if isinstance(message, Authenticate):
                if not api_key_matches(message.token):
                    await _send(websocket, AuthError(reason="Invalid token"))
                elif not message.steam_id.isdigit():
                    await _send(websocket, AuthError(reason="Steam ID must be numeric"))
                else:
                    steam_id = message.steam_id
                    logger.info("WebSocket authenticated", extra={"steam_id": steam_id})
                    await _send(websocket, Authenticated(steam_id=steam_id))
                continue

            if steam_id is None:
                await _send(websocket, AuthError(reason=NOT_AUTHENTICATED))
                continue

            if isinstance(message, SyncFromSteam):
                await _sync(websocket, steam_id, UPDATE)
            elif isinstance(message, FullScan):
                await _sync(websocket, steam_id, FULL_SCAN, force=message.force)
            else:
                try:
                    await _send(websocket, await _query(steam_id, message))
                except StoreError as e:
                    logger.error(
                        "WebSocket query failed",
                        extra={"steam_id": steam_id, "error": str(e)},
                    )
                    await _send(websocket, ErrorMessage(message=str(e)))

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected", extra={"steam_id": steam_id})
