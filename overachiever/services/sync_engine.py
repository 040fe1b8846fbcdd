"""
The two sync flows: Update (recently played games only) and Full Scan
(every game, or only never-scraped ones).

A flow reports through a ProgressChannel and always ends with exactly one
Done or Error event. Failures fetching the owned or recently-played lists
end the flow; failures while scraping a single game are logged and skipped,
leaving that game's last_achievement_scrape unset so a later Full Scan
retries it.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

import structlog
from pydantic import BaseModel

from overachiever.database import AsyncSessionLocal
from overachiever.errors import (
    AuthRequired,
    DataUnavailable,
    OverachieverError,
    StoreError,
    TransportError,
)
from overachiever.events import (
    Done,
    FetchingGames,
    FetchingRecentlyPlayed,
    GameUpdated,
    ProgressChannel,
    ScrapingAchievements,
    Starting,
    SyncObserver,
    SyncSummary,
)
from overachiever.models import GameRead, as_utc, utc_now
from overachiever.services.reconciliation import (
    compute_completion_stats,
    merge_achievements,
)
from overachiever.services.steam_client import SteamClient
from overachiever.services.store import AchievementStore, UpsertOutcome
from overachiever.settings import settings

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Sync cancelled"

# Checked between games; threaded callers pass a threading.Event
CancelFlag = Union[asyncio.Event, threading.Event]

# Errors that only cost us the current game
PER_GAME_ERRORS = (TransportError, DataUnavailable, StoreError)


class SyncCancelled(OverachieverError):
    pass


class SyncSession(BaseModel):
    """Credentials a flow runs with. Either part may be missing."""

    steam_id: Optional[str] = None
    api_key: Optional[str] = None

    @classmethod
    def from_settings(cls, steam_id: Optional[str] = None) -> "SyncSession":
        return cls(steam_id=steam_id or settings.STEAM_ID, api_key=settings.STEAM_API_KEY)

    def require(self):
        if not self.api_key:
            raise AuthRequired(AuthRequired.NOT_CONFIGURED)
        if not self.steam_id:
            raise AuthRequired(AuthRequired.NOT_AUTHENTICATED)


def is_update_stale(
    last_update: Optional[datetime],
    now: Optional[datetime] = None,
    days: Optional[int] = None,
) -> bool:
    """
    Recently-played only covers about two weeks, so an Update older than
    that has missed games and the user should run a Full Scan instead.
    """
    if last_update is None:
        return True
    now = now or utc_now()
    days = settings.STALE_UPDATE_DAYS if days is None else days
    return as_utc(now) - as_utc(last_update) > timedelta(days=days)


class ScrapeTally(BaseModel):
    games_updated: int = 0
    achievements_updated: int = 0
    games_with_achievements: int = 0


class SyncEngine:
    """
    Runs one flow at a time for the session it was built with. Not
    reentrant: callers keep a single flow in flight per user (see SyncRunner).
    """

    def __init__(
        self,
        session: SyncSession,
        client: Optional[SteamClient] = None,
        session_factory=AsyncSessionLocal,
        scrape_delay: Optional[float] = None,
    ):
        self.session = session
        self.client = client
        self.session_factory = session_factory
        self.scrape_delay = (
            settings.scrape_delay_seconds if scrape_delay is None else scrape_delay
        )

    # --- Entry points ---

    async def run_update(
        self, observer: SyncObserver, cancel_event: Optional[CancelFlag] = None
    ) -> Optional[SyncSummary]:
        channel = ProgressChannel(observer, flow="update")
        return await self._run(channel, self._update_flow, cancel_event)

    async def run_full_scan(
        self,
        observer: SyncObserver,
        force: bool = False,
        cancel_event: Optional[CancelFlag] = None,
    ) -> Optional[SyncSummary]:
        channel = ProgressChannel(observer, flow="full_scan")
        return await self._run(
            channel,
            lambda store, client, ch, cancel: self._full_scan_flow(
                store, client, ch, cancel, force
            ),
            cancel_event,
        )

    # --- Flow plumbing ---

    async def _run(self, channel: ProgressChannel, flow, cancel_event) -> Optional[SyncSummary]:
        # Every log line of this flow, store and client included, carries both
        with structlog.contextvars.bound_contextvars(
            steam_id=self.session.steam_id, flow=channel.flow
        ):
            return await self._run_bound(channel, flow, cancel_event)

    async def _run_bound(self, channel: ProgressChannel, flow, cancel_event):
        await channel.emit(Starting())

        try:
            self.session.require()
        except AuthRequired as e:
            logger.warning("Sync refused", extra={"reason": e.reason})
            await channel.fail(str(e))
            return None

        logger.info("Sync started")
        try:
            async with self._resources() as (store, client):
                summary = await flow(store, client, channel, cancel_event)
        except SyncCancelled:
            logger.info("Sync cancelled")
            await channel.fail(CANCELLED_MESSAGE)
            return None
        except OverachieverError as e:
            logger.error("Sync failed", extra={"error": str(e)})
            await channel.fail(str(e))
            return None
        except Exception as e:
            logger.error(f"Unexpected error during {channel.flow}: {e}", exc_info=True)
            await channel.fail(f"Unexpected error: {e}")
            return None

        logger.info("Sync finished", extra=summary.model_dump())
        return summary

    @asynccontextmanager
    async def _resources(self):
        async with self.session_factory() as db_session:
            store = AchievementStore(db_session)
            if self.client is not None:
                yield store, self.client
                return
            async with SteamClient(api_key=self.session.api_key) as client:
                yield store, client

    @staticmethod
    def _check_cancelled(cancel_event: Optional[CancelFlag]):
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled(CANCELLED_MESSAGE)

    # --- Steps ---

    async def _sync_owned_games(
        self, store: AchievementStore, client: SteamClient, channel: ProgressChannel
    ) -> Tuple[UpsertOutcome, List[Tuple[int, str]]]:
        """Fetch the library and stage its upsert. Nothing is committed yet."""
        steam_id = self.session.steam_id
        await channel.emit(FetchingGames())

        owned = await client.get_owned_games(steam_id)
        outcome = await store.upsert_games(steam_id, owned)
        return outcome, [(g.appid, g.name) for g in owned]

    async def _commit_library(self, store: AchievementStore, outcome: UpsertOutcome):
        """Append the run snapshot and commit it together with the library upsert."""
        steam_id = self.session.steam_id
        await store.insert_run_history_snapshot(
            steam_id, outcome.total_games, outcome.unplayed_games
        )
        await store.commit()

        logger.info(
            "Owned games synced",
            extra={
                "total_games": outcome.total_games,
                "new_games": outcome.new_games,
                "first_plays": len(outcome.first_plays),
            },
        )

    async def _scrape_game(
        self, store: AchievementStore, client: SteamClient, appid: int
    ) -> Tuple[int, int]:
        steam_id = self.session.steam_id
        progress = await client.get_player_achievements(steam_id, appid)
        schema = await client.get_schema_for_game(appid)

        if not progress and not schema:
            await store.mark_game_zero_achievements(steam_id, appid)
            await store.commit()
            return 0, 0

        result = await merge_achievements(store, steam_id, appid, progress, schema)
        await store.update_game_achievement_counts(
            steam_id, appid, result.total_count, result.unlocked_count
        )
        await store.commit()
        return result.unlocked_count, result.total_count

    async def _scrape_games(
        self,
        store: AchievementStore,
        client: SteamClient,
        channel: ProgressChannel,
        targets: List[Tuple[int, str]],
        cancel_event: Optional[CancelFlag],
    ) -> ScrapeTally:
        tally = ScrapeTally()
        total = len(targets)

        for index, (appid, name) in enumerate(targets, start=1):
            self._check_cancelled(cancel_event)
            if index > 1 and self.scrape_delay > 0:
                await asyncio.sleep(self.scrape_delay)

            try:
                unlocked, achievements = await self._scrape_game(store, client, appid)
            except PER_GAME_ERRORS as e:
                await store.rollback()
                logger.warning(
                    "Skipping game after scrape failure",
                    extra={
                        "appid": appid,
                        "game_name": name,
                        "error": str(e),
                    },
                )
                await channel.emit(
                    ScrapingAchievements(current=index, total=total, game_name=name)
                )
                continue

            tally.games_updated += 1
            tally.achievements_updated += achievements
            if achievements > 0:
                tally.games_with_achievements += 1

            await channel.emit(ScrapingAchievements(current=index, total=total, game_name=name))
            await channel.emit(GameUpdated(appid=appid, unlocked=unlocked, total=achievements))

        return tally

    async def _finish(
        self,
        store: AchievementStore,
        channel: ProgressChannel,
        tally: ScrapeTally,
        outcome: UpsertOutcome,
        record_update: bool,
    ) -> SyncSummary:
        steam_id = self.session.steam_id

        if tally.games_with_achievements > 0:
            stats = compute_completion_stats(await store.get_all_games(steam_id))
            await store.insert_achievement_history_snapshot(
                steam_id,
                stats.total_achievements,
                stats.unlocked_achievements,
                stats.games_with_achievements,
                stats.avg_completion_percent,
            )
        if record_update:
            await store.record_last_update_timestamp(steam_id)
        await store.commit()

        # Report exactly what is stored
        games = [GameRead.model_validate(g) for g in await store.get_all_games(steam_id)]
        summary = SyncSummary(
            games_updated=tally.games_updated,
            achievements_updated=tally.achievements_updated,
            new_games=outcome.new_games,
        )
        await channel.emit(Done(summary=summary, games=games))
        return summary

    # --- Flows ---

    async def _update_flow(
        self,
        store: AchievementStore,
        client: SteamClient,
        channel: ProgressChannel,
        cancel_event: Optional[CancelFlag],
    ) -> SyncSummary:
        outcome, owned = await self._sync_owned_games(store, client, channel)
        self._check_cancelled(cancel_event)

        await channel.emit(FetchingRecentlyPlayed())
        recent = await client.get_recently_played(self.session.steam_id)
        # A failed recently-played fetch discards the library refresh with it
        await self._commit_library(store, outcome)

        if not recent:
            logger.info("No recently played games")
            return await self._finish(store, channel, ScrapeTally(), outcome, record_update=True)

        recent_ids = set(recent)
        targets = [(appid, name) for appid, name in owned if appid in recent_ids]
        tally = await self._scrape_games(store, client, channel, targets, cancel_event)
        return await self._finish(store, channel, tally, outcome, record_update=True)

    async def _full_scan_flow(
        self,
        store: AchievementStore,
        client: SteamClient,
        channel: ProgressChannel,
        cancel_event: Optional[CancelFlag],
        force: bool,
    ) -> SyncSummary:
        outcome, _ = await self._sync_owned_games(store, client, channel)
        await self._commit_library(store, outcome)
        self._check_cancelled(cancel_event)

        steam_id = self.session.steam_id
        if force:
            games = await store.get_all_games(steam_id)
        else:
            games = await store.get_games_never_scraped(steam_id)
        targets = [(g.appid, g.name) for g in games]

        logger.info(
            "Full scan selection",
            extra={"force": force, "games": len(targets)},
        )
        tally = await self._scrape_games(store, client, channel, targets, cancel_event)
        # A forced scan covers everything an Update would have
        return await self._finish(store, channel, tally, outcome, record_update=force)
