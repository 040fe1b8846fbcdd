"""
WebSocket wire messages. Both directions are tagged with a "type" field;
sync progress re-encodes the event taxonomy with its "state" tag intact.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from overachiever.events import (
    Done,
    Error,
    SyncEvent,
    SyncSummary,
)
from overachiever.models import (
    AchievementHistory,
    GameAchievement,
    GameRatingRead,
    GameRead,
    LogEntry,
    MAX_RATING,
    MIN_RATING,
    RunHistory,
)


# --- Client -> server ---


class Authenticate(BaseModel):
    type: Literal["Authenticate"] = "Authenticate"
    steam_id: str
    token: Optional[str] = None


class Ping(BaseModel):
    type: Literal["Ping"] = "Ping"


class FetchGames(BaseModel):
    type: Literal["FetchGames"] = "FetchGames"


class FetchAchievements(BaseModel):
    type: Literal["FetchAchievements"] = "FetchAchievements"
    appid: int


class SyncFromSteam(BaseModel):
    type: Literal["SyncFromSteam"] = "SyncFromSteam"


class FullScan(BaseModel):
    type: Literal["FullScan"] = "FullScan"
    force: bool = False


class FetchHistory(BaseModel):
    type: Literal["FetchHistory"] = "FetchHistory"


class SubmitRating(BaseModel):
    type: Literal["SubmitRating"] = "SubmitRating"
    appid: int
    rating: int = Field(ge=MIN_RATING, le=MAX_RATING)
    comment: Optional[str] = None


class GetCommunityRatings(BaseModel):
    type: Literal["GetCommunityRatings"] = "GetCommunityRatings"
    appid: int


ClientMessage = Annotated[
    Union[
        Authenticate,
        Ping,
        FetchGames,
        FetchAchievements,
        SyncFromSteam,
        FullScan,
        FetchHistory,
        SubmitRating,
        GetCommunityRatings,
    ],
    Field(discriminator="type"),
]

client_message_adapter = TypeAdapter(ClientMessage)


# --- Server -> client ---


class Authenticated(BaseModel):
    type: Literal["Authenticated"] = "Authenticated"
    steam_id: str


class AuthError(BaseModel):
    type: Literal["AuthError"] = "AuthError"
    reason: str


class Pong(BaseModel):
    type: Literal["Pong"] = "Pong"


class Games(BaseModel):
    type: Literal["Games"] = "Games"
    games: List[GameRead]


class Achievements(BaseModel):
    type: Literal["Achievements"] = "Achievements"
    appid: int
    achievements: List[GameAchievement]


class History(BaseModel):
    type: Literal["History"] = "History"
    run_history: List[RunHistory]
    achievement_history: List[AchievementHistory]
    log_entries: List[LogEntry]


class SyncProgress(BaseModel):
    type: Literal["SyncProgress"] = "SyncProgress"
    state: SyncEvent


class SyncComplete(BaseModel):
    type: Literal["SyncComplete"] = "SyncComplete"
    result: SyncSummary
    games: List[GameRead]


class CommunityRatings(BaseModel):
    type: Literal["CommunityRatings"] = "CommunityRatings"
    appid: int
    avg_rating: float
    rating_count: int
    ratings: List[GameRatingRead]


class RatingSubmitted(BaseModel):
    type: Literal["RatingSubmitted"] = "RatingSubmitted"
    appid: int


class ErrorMessage(BaseModel):
    type: Literal["Error"] = "Error"
    message: str


ServerMessage = Union[
    Authenticated,
    AuthError,
    Pong,
    Games,
    Achievements,
    History,
    SyncProgress,
    SyncComplete,
    CommunityRatings,
    RatingSubmitted,
    ErrorMessage,
]


def to_server_message(event: SyncEvent) -> ServerMessage:
    """Terminal events get their own message types; the rest ride in SyncProgress."""
    if isinstance(event, Done):
        return SyncComplete(result=event.summary, games=event.games)
    if isinstance(event, Error):
        return ErrorMessage(message=event.message)
    return SyncProgress(state=event)
