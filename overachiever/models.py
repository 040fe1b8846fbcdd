from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import SQLModel, Field
from typing import List, Literal, Optional, Union
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we write is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


MIN_RATING = 1
MAX_RATING = 5


class GameBase(SQLModel):
    # Identity is (user, app)
    steam_id: str = Field(primary_key=True)
    appid: int = Field(primary_key=True)

    name: str = Field(index=True)
    playtime_forever: int = 0  # minutes
    rtime_last_played: Optional[int] = None  # unix seconds, 0 = never
    img_icon_url: Optional[str] = None
    added_at: datetime = Field(default_factory=utc_now)

    # Both stay NULL until the first successful scrape; total == 0 means
    # "checked, has no achievements".
    achievements_total: Optional[int] = None
    achievements_unlocked: Optional[int] = None
    last_achievement_scrape: Optional[datetime] = None

    def completion_percent(self) -> Optional[float]:
        if self.achievements_total and self.achievements_unlocked is not None:
            return self.achievements_unlocked / self.achievements_total * 100.0
        return None


class Game(GameBase, table=True):
    __tablename__ = "user_games"


class GameRead(GameBase):
    pass


class UserAchievement(SQLModel, table=True):
    __tablename__ = "user_achievements"

    steam_id: str = Field(primary_key=True)
    appid: int = Field(primary_key=True)
    apiname: str = Field(primary_key=True)

    achieved: bool = Field(default=False)
    unlocktime: Optional[datetime] = None


class AchievementSchema(SQLModel, table=True):
    __tablename__ = "achievement_schemas"

    # Shared reference data, not owned by any user
    appid: int = Field(primary_key=True)
    apiname: str = Field(primary_key=True)

    display_name: str
    description: Optional[str] = None
    icon: str = ""
    icon_gray: str = ""
    cached_at: datetime = Field(default_factory=utc_now)


class RunHistory(SQLModel, table=True):
    __tablename__ = "run_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    steam_id: str = Field(index=True)
    run_at: datetime = Field(default_factory=utc_now)
    total_games: int
    unplayed_games: int = 0


class AchievementHistory(SQLModel, table=True):
    __tablename__ = "achievement_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    steam_id: str = Field(index=True)
    recorded_at: datetime = Field(default_factory=utc_now)
    total_achievements: int
    unlocked_achievements: int
    games_with_achievements: int
    avg_completion_percent: float


class FirstPlay(SQLModel, table=True):
    __tablename__ = "first_plays"

    steam_id: str = Field(primary_key=True)
    appid: int = Field(primary_key=True)
    played_at: datetime


class AppSetting(SQLModel, table=True):
    __tablename__ = "app_settings"

    key: str = Field(primary_key=True)
    value: str


class GameRatingBase(SQLModel):
    steam_id: str = Field(index=True)
    appid: int = Field(index=True)
    rating: int  # 1-5 stars
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class GameRating(GameRatingBase, table=True):
    """Community rating: one per user and game, shared with every user."""

    __tablename__ = "game_ratings"
    __table_args__ = (
        UniqueConstraint("steam_id", "appid"),
        CheckConstraint(f"rating >= {MIN_RATING} AND rating <= {MAX_RATING}"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)


class GameRatingRead(GameRatingBase):
    id: int


class RatingSubmission(SQLModel):
    rating: int = Field(ge=MIN_RATING, le=MAX_RATING)
    comment: Optional[str] = Field(default=None, max_length=2000)


# --- Read projections (not stored) ---


class GameAchievement(SQLModel):
    appid: int
    apiname: str
    name: str
    description: Optional[str] = None
    icon: str = ""
    icon_gray: str = ""
    achieved: bool = False
    unlocktime: Optional[datetime] = None


class AchievementLogEntry(SQLModel):
    type: Literal["Achievement"] = "Achievement"
    appid: int
    apiname: str
    game_name: str
    achievement_name: str
    timestamp: datetime
    achievement_icon: str = ""
    game_icon_url: Optional[str] = None


class FirstPlayLogEntry(SQLModel):
    type: Literal["FirstPlay"] = "FirstPlay"
    appid: int
    game_name: str
    timestamp: datetime
    game_icon_url: Optional[str] = None


LogEntry = Union[AchievementLogEntry, FirstPlayLogEntry]


class CommunityRatingSummary(SQLModel):
    appid: int
    avg_rating: float = 0.0
    rating_count: int = 0
    ratings: List[GameRatingRead] = []
