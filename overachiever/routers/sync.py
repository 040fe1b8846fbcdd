from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from overachiever.database import get_session
from overachiever.routers.auth import current_steam_id
from overachiever.services.store import AchievementStore
from overachiever.services.sync_engine import SyncSession, is_update_stale
from overachiever.services.sync_runner import FULL_SCAN, UPDATE, SyncBusy, SyncRunner

router = APIRouter(prefix="/sync", tags=["sync"])
sync_runner = SyncRunner()  # One per process; holds the per-user busy flags


def _start(background_tasks: BackgroundTasks, steam_id: str, flow: str, force: bool = False):
    session = SyncSession.from_settings(steam_id)
    try:
        state = sync_runner.claim(session, flow)
    except SyncBusy as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(sync_runner.execute, session, state, force, None)
    return {"status": f"{flow} started", "steam_id": steam_id}


@router.post("/update")
async def start_update(
    background_tasks: BackgroundTasks, steam_id: str = Depends(current_steam_id)
):
    """
    Quick sync: refresh the library, then scrape achievements for games
    played in the last two weeks.
    """
    return _start(background_tasks, steam_id, UPDATE)


@router.post("/full-scan")
async def start_full_scan(
    background_tasks: BackgroundTasks,
    force: bool = Query(False, description="Rescan every game, not just never-scraped ones"),
    steam_id: str = Depends(current_steam_id),
):
    return _start(background_tasks, steam_id, FULL_SCAN, force=force)


@router.post("/cancel")
async def cancel_sync(steam_id: str = Depends(current_steam_id)):
    if not sync_runner.cancel(steam_id):
        raise HTTPException(status_code=409, detail="No sync is running")
    return {"status": "cancelling"}


@router.get("/status")
async def get_sync_status(
    force: bool = Query(False),
    steam_id: str = Depends(current_steam_id),
    session: AsyncSession = Depends(get_session),
):
    store = AchievementStore(session)
    last_update = await store.get_last_update_timestamp(steam_id)
    needs_scrape = await store.count_games_never_scraped(steam_id)

    status = sync_runner.get_status(steam_id)
    status.update(
        {
            "last_update": last_update,
            "is_stale": is_update_stale(last_update),
            "needs_scrape": needs_scrape,
            "can_full_scan": needs_scrape > 0 or force,
        }
    )
    return status


@router.get("/events")
async def drain_sync_events(steam_id: str = Depends(current_steam_id)):
    """Events produced since the last call, oldest first."""
    return [event.model_dump(mode="json") for event in sync_runner.drain_events(steam_id)]
