import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from overachiever.errors import StoreError
from overachiever.models import (
    AchievementHistory,
    AchievementLogEntry,
    AchievementSchema,
    AppSetting,
    CommunityRatingSummary,
    FirstPlay,
    FirstPlayLogEntry,
    Game,
    GameAchievement,
    GameRating,
    GameRatingRead,
    LogEntry,
    MAX_RATING,
    MIN_RATING,
    RunHistory,
    UserAchievement,
    as_utc,
    utc_now,
)
from overachiever.services.steam_client import OwnedGame, SchemaAchievement

logger = logging.getLogger(__name__)

LAST_UPDATE_KEY = "last_update:{steam_id}"


class UpsertOutcome(BaseModel):
    total_games: int = 0
    unplayed_games: int = 0
    new_games: int = 0
    first_plays: List[int] = []


class AchievementStore:
    """
    Persistent store for one user's library, achievement state and history.

    Write methods stage changes on the session; callers decide where a unit
    of work ends by calling commit(). Any SQLAlchemy failure surfaces as
    StoreError with the session rolled back.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self):
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreError(f"Failed to commit changes: {e}") from e

    async def rollback(self):
        await self.session.rollback()

    async def _execute(self, stmt):
        try:
            return await self.session.execute(stmt)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreError(f"Query failed: {e}") from e

    async def _get(self, model, identity):
        try:
            return await self.session.get(model, identity)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreError(f"Lookup of {model.__name__} failed: {e}") from e

    # --- Games ---

    async def upsert_games(self, steam_id: str, owned: List[OwnedGame]) -> UpsertOutcome:
        """
        Insert or refresh every owned game. Achievement columns are never
        touched here: the owned-games call carries no achievement data.
        A game whose stored playtime is exactly 0 and whose fresh playtime is
        positive gets its (single) first-play event.
        """
        result = await self._execute(select(Game).where(Game.steam_id == steam_id))
        existing: Dict[int, Game] = {g.appid: g for g in result.scalars().all()}

        outcome = UpsertOutcome()
        now = utc_now()

        for data in owned:
            game = existing.get(data.appid)
            if game is None:
                game = Game(steam_id=steam_id, appid=data.appid, name=data.name, added_at=now)
                existing[data.appid] = game
                outcome.new_games += 1
            elif game.playtime_forever == 0 and data.playtime_forever > 0:
                played_at = (
                    datetime.fromtimestamp(data.rtime_last_played, tz=timezone.utc)
                    if data.rtime_last_played
                    else now
                )
                if await self._add_first_play(steam_id, data.appid, played_at):
                    outcome.first_plays.append(data.appid)

            game.name = data.name or game.name
            game.playtime_forever = data.playtime_forever
            game.rtime_last_played = data.rtime_last_played
            game.img_icon_url = data.icon_url or game.img_icon_url
            self.session.add(game)

        outcome.total_games = len(owned)
        outcome.unplayed_games = sum(1 for g in owned if g.playtime_forever == 0)
        return outcome

    async def get_game(self, steam_id: str, appid: int) -> Optional[Game]:
        return await self._get(Game, (steam_id, appid))

    async def get_all_games(self, steam_id: str) -> List[Game]:
        result = await self._execute(
            select(Game).where(Game.steam_id == steam_id).order_by(Game.name)
        )
        return list(result.scalars().all())

    async def get_games_never_scraped(self, steam_id: str) -> List[Game]:
        result = await self._execute(
            select(Game)
            .where(Game.steam_id == steam_id)
            .where(Game.last_achievement_scrape.is_(None))
            .order_by(Game.name)
        )
        return list(result.scalars().all())

    async def count_games_never_scraped(self, steam_id: str) -> int:
        result = await self._execute(
            select(func.count())
            .select_from(Game)
            .where(Game.steam_id == steam_id)
            .where(Game.last_achievement_scrape.is_(None))
        )
        return result.scalar() or 0

    async def update_game_achievement_counts(
        self, steam_id: str, appid: int, total: int, unlocked: int
    ) -> Optional[Game]:
        if unlocked > total:
            raise ValueError(f"unlocked ({unlocked}) exceeds total ({total}) for {appid}")

        game = await self.get_game(steam_id, appid)
        if game is None:
            logger.warning(
                "Achievement counts for unknown game ignored",
                extra={"steam_id": steam_id, "appid": appid},
            )
            return None

        game.achievements_total = total
        game.achievements_unlocked = unlocked
        game.last_achievement_scrape = utc_now()
        self.session.add(game)
        return game

    async def mark_game_zero_achievements(self, steam_id: str, appid: int) -> Optional[Game]:
        return await self.update_game_achievement_counts(steam_id, appid, 0, 0)

    # --- Achievements ---

    async def get_unlock_states(self, steam_id: str, appid: int) -> Dict[str, UserAchievement]:
        result = await self._execute(
            select(UserAchievement)
            .where(UserAchievement.steam_id == steam_id)
            .where(UserAchievement.appid == appid)
        )
        return {a.apiname: a for a in result.scalars().all()}

    async def upsert_achievement_unlock_state(
        self,
        steam_id: str,
        appid: int,
        apiname: str,
        achieved: bool,
        unlocktime: Optional[datetime],
    ) -> UserAchievement:
        """
        Unlock times coalesce: a fresh NULL for an achieved row keeps the
        stored time. A locked row never carries a time.
        """
        row = await self._get(UserAchievement, (steam_id, appid, apiname))
        if row is None:
            row = UserAchievement(steam_id=steam_id, appid=appid, apiname=apiname)

        row.achieved = achieved
        if not achieved:
            row.unlocktime = None
        elif unlocktime is not None:
            row.unlocktime = unlocktime

        self.session.add(row)
        return row

    async def upsert_achievement_schema(
        self, appid: int, entry: SchemaAchievement
    ) -> AchievementSchema:
        """cached_at only moves when the publisher's data actually changed."""
        fields = {
            "display_name": entry.display_name or entry.apiname,
            "description": entry.description,
            "icon": entry.icon,
            "icon_gray": entry.icon_gray,
        }
        row = await self._get(AchievementSchema, (appid, entry.apiname))
        if row is None:
            row = AchievementSchema(appid=appid, apiname=entry.apiname, **fields)
        elif all(getattr(row, name) == value for name, value in fields.items()):
            return row
        else:
            for name, value in fields.items():
                setattr(row, name, value)
            row.cached_at = utc_now()

        self.session.add(row)
        return row

    async def get_game_achievements(self, steam_id: str, appid: int) -> List[GameAchievement]:
        stmt = (
            select(UserAchievement, AchievementSchema)
            .outerjoin(
                AchievementSchema,
                (AchievementSchema.appid == UserAchievement.appid)
                & (AchievementSchema.apiname == UserAchievement.apiname),
            )
            .where(UserAchievement.steam_id == steam_id)
            .where(UserAchievement.appid == appid)
        )
        result = await self._execute(stmt)

        achievements = []
        for state, schema in result.all():
            achievements.append(
                GameAchievement(
                    appid=state.appid,
                    apiname=state.apiname,
                    name=schema.display_name if schema else state.apiname,
                    description=schema.description if schema else None,
                    icon=schema.icon if schema else "",
                    icon_gray=schema.icon_gray if schema else "",
                    achieved=state.achieved,
                    unlocktime=state.unlocktime,
                )
            )
        achievements.sort(key=lambda a: a.name.lower())
        return achievements

    # --- First plays ---

    async def _add_first_play(self, steam_id: str, appid: int, played_at: datetime) -> bool:
        if await self._get(FirstPlay, (steam_id, appid)) is not None:
            return False
        self.session.add(FirstPlay(steam_id=steam_id, appid=appid, played_at=played_at))
        return True

    async def record_first_play(self, steam_id: str, appid: int, played_at: datetime) -> bool:
        """Insert-or-ignore: returns False when the game already has one."""
        return await self._add_first_play(steam_id, appid, played_at)

    # --- History ---

    async def insert_run_history_snapshot(
        self, steam_id: str, total_games: int, unplayed_games: int
    ) -> RunHistory:
        entry = RunHistory(
            steam_id=steam_id, total_games=total_games, unplayed_games=unplayed_games
        )
        self.session.add(entry)
        return entry

    async def insert_achievement_history_snapshot(
        self,
        steam_id: str,
        total_achievements: int,
        unlocked_achievements: int,
        games_with_achievements: int,
        avg_completion_percent: float,
    ) -> AchievementHistory:
        entry = AchievementHistory(
            steam_id=steam_id,
            total_achievements=total_achievements,
            unlocked_achievements=unlocked_achievements,
            games_with_achievements=games_with_achievements,
            avg_completion_percent=avg_completion_percent,
        )
        self.session.add(entry)
        return entry

    async def get_run_history(self, steam_id: str) -> List[RunHistory]:
        result = await self._execute(
            select(RunHistory)
            .where(RunHistory.steam_id == steam_id)
            .order_by(RunHistory.run_at, RunHistory.id)
        )
        return list(result.scalars().all())

    async def get_achievement_history(self, steam_id: str) -> List[AchievementHistory]:
        result = await self._execute(
            select(AchievementHistory)
            .where(AchievementHistory.steam_id == steam_id)
            .order_by(AchievementHistory.recorded_at, AchievementHistory.id)
        )
        return list(result.scalars().all())

    # --- Community ratings ---

    async def submit_rating(
        self, steam_id: str, appid: int, rating: int, comment: Optional[str] = None
    ) -> GameRating:
        """One rating per user and game; submitting again replaces it."""
        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValueError(f"rating must be between {MIN_RATING} and {MAX_RATING}, got {rating}")

        result = await self._execute(
            select(GameRating)
            .where(GameRating.steam_id == steam_id)
            .where(GameRating.appid == appid)
        )
        row = result.scalars().first()
        now = utc_now()
        if row is None:
            row = GameRating(
                steam_id=steam_id, appid=appid, rating=rating, created_at=now, updated_at=now
            )

        row.rating = rating
        row.comment = comment
        row.updated_at = now
        self.session.add(row)
        return row

    async def get_community_ratings(self, appid: int) -> CommunityRatingSummary:
        result = await self._execute(
            select(GameRating)
            .where(GameRating.appid == appid)
            .order_by(GameRating.created_at.desc(), GameRating.id.desc())
        )
        ratings = [GameRatingRead.model_validate(r) for r in result.scalars().all()]
        if not ratings:
            return CommunityRatingSummary(appid=appid)

        return CommunityRatingSummary(
            appid=appid,
            avg_rating=sum(r.rating for r in ratings) / len(ratings),
            rating_count=len(ratings),
            ratings=ratings,
        )

    # --- Last update ---

    async def record_last_update_timestamp(
        self, steam_id: str, when: Optional[datetime] = None
    ) -> datetime:
        when = when or utc_now()
        key = LAST_UPDATE_KEY.format(steam_id=steam_id)
        setting = await self._get(AppSetting, key)
        if setting is None:
            setting = AppSetting(key=key, value="")
        setting.value = as_utc(when).isoformat()
        self.session.add(setting)
        return when

    async def get_last_update_timestamp(self, steam_id: str) -> Optional[datetime]:
        setting = await self._get(AppSetting, LAST_UPDATE_KEY.format(steam_id=steam_id))
        if setting is None:
            return None
        try:
            return as_utc(datetime.fromisoformat(setting.value))
        except ValueError:
            logger.warning(
                "Unparseable last update timestamp",
                extra={"steam_id": steam_id, "value": setting.value},
            )
            return None

    # --- Log ---

    async def get_log_entries(self, steam_id: str, limit: int) -> List[LogEntry]:
        """Achievement unlocks and first plays, newest first."""
        achievements_stmt = (
            select(UserAchievement, Game, AchievementSchema)
            .join(
                Game,
                (Game.steam_id == UserAchievement.steam_id)
                & (Game.appid == UserAchievement.appid),
            )
            .outerjoin(
                AchievementSchema,
                (AchievementSchema.appid == UserAchievement.appid)
                & (AchievementSchema.apiname == UserAchievement.apiname),
            )
            .where(UserAchievement.steam_id == steam_id)
            .where(UserAchievement.achieved.is_(True))
            .where(UserAchievement.unlocktime.is_not(None))
            .order_by(UserAchievement.unlocktime.desc())
            .limit(limit)
        )
        first_plays_stmt = (
            select(FirstPlay, Game)
            .join(
                Game,
                (Game.steam_id == FirstPlay.steam_id) & (Game.appid == FirstPlay.appid),
            )
            .where(FirstPlay.steam_id == steam_id)
            .order_by(FirstPlay.played_at.desc())
            .limit(limit)
        )

        entries: List[LogEntry] = []
        for state, game, schema in (await self._execute(achievements_stmt)).all():
            entries.append(
                AchievementLogEntry(
                    appid=state.appid,
                    apiname=state.apiname,
                    game_name=game.name,
                    achievement_name=schema.display_name if schema else "Unknown",
                    timestamp=as_utc(state.unlocktime),
                    achievement_icon=schema.icon if schema else "",
                    game_icon_url=game.img_icon_url,
                )
            )
        for first_play, game in (await self._execute(first_plays_stmt)).all():
            entries.append(
                FirstPlayLogEntry(
                    appid=first_play.appid,
                    game_name=game.name,
                    timestamp=as_utc(first_play.played_at),
                    game_icon_url=game.img_icon_url,
                )
            )

        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]
