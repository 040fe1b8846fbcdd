from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List
from sqlalchemy.ext.asyncio import AsyncSession

from overachiever.database import get_session
from overachiever.models import (
    CommunityRatingSummary,
    GameAchievement,
    GameRatingRead,
    GameRead,
    RatingSubmission,
)
from overachiever.routers.auth import current_steam_id, verify_api_key
from overachiever.services.reconciliation import CompletionStats, compute_completion_stats
from overachiever.services.store import AchievementStore
from overachiever.settings import settings

router = APIRouter(tags=["games"])


@router.get("/games", response_model=List[GameRead])
async def list_games(
    steam_id: str = Depends(current_steam_id),
    session: AsyncSession = Depends(get_session),
):
    store = AchievementStore(session)
    return await store.get_all_games(steam_id)


@router.get("/games/{appid}", response_model=GameRead)
async def get_game(
    appid: int,
    steam_id: str = Depends(current_steam_id),
    session: AsyncSession = Depends(get_session),
):
    store = AchievementStore(session)
    game = await store.get_game(steam_id, appid)
    if not game:
        raise HTTPException(status_code=404, detail="Game not found")
    return game


@router.get("/games/{appid}/achievements", response_model=List[GameAchievement])
async def get_game_achievements(
    appid: int,
    steam_id: str = Depends(current_steam_id),
    session: AsyncSession = Depends(get_session),
):
    """
    Unlock state joined with the cached schema. Empty until the game has
    been scraped at least once.
    """
    store = AchievementStore(session)
    if not await store.get_game(steam_id, appid):
        raise HTTPException(status_code=404, detail="Game not found")
    return await store.get_game_achievements(steam_id, appid)


@router.get(
    "/games/{appid}/ratings",
    response_model=CommunityRatingSummary,
    dependencies=[Depends(verify_api_key)],
)
async def get_ratings(appid: int, session: AsyncSession = Depends(get_session)):
    """Every user's rating for the game, newest first. Needs no Steam ID."""
    store = AchievementStore(session)
    return await store.get_community_ratings(appid)


@router.post("/games/{appid}/ratings", response_model=GameRatingRead, status_code=201)
async def submit_rating(
    appid: int,
    submission: RatingSubmission,
    steam_id: str = Depends(current_steam_id),
    session: AsyncSession = Depends(get_session),
):
    store = AchievementStore(session)
    rating = await store.submit_rating(steam_id, appid, submission.rating, submission.comment)
    await store.commit()
    return rating


@router.get("/stats", response_model=CompletionStats)
async def get_stats(
    include_unplayed: bool = Query(
        False, description="Count never-played games in the average completion"
    ),
    steam_id: str = Depends(current_steam_id),
    session: AsyncSession = Depends(get_session),
):
    store = AchievementStore(session)
    games = await store.get_all_games(steam_id)
    return compute_completion_stats(games, include_unplayed=include_unplayed)


@router.get("/history")
async def get_history(
    limit: int = Query(None, ge=1, le=500, description="Max log entries"),
    steam_id: str = Depends(current_steam_id),
    session: AsyncSession = Depends(get_session),
):
    """Run history, achievement history and the recent activity log."""
    store = AchievementStore(session)
    return {
        "run_history": await store.get_run_history(steam_id),
        "achievement_history": await store.get_achievement_history(steam_id),
        "log_entries": await store.get_log_entries(
            steam_id, limit or settings.LOG_ENTRY_LIMIT
        ),
    }
