import httpx
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from overachiever.errors import DataUnavailable, TransportError
from overachiever.settings import settings

logger = logging.getLogger(__name__)

ICON_URL_TEMPLATE = (
    "https://media.steampowered.com/steamcommunity/public/images/apps/{appid}/{hash}.jpg"
)


class OwnedGame(BaseModel):
    appid: int
    name: str = ""
    playtime_forever: int = 0
    rtime_last_played: Optional[int] = None
    img_icon_url: Optional[str] = None

    @property
    def icon_url(self) -> Optional[str]:
        if not self.img_icon_url:
            return None
        if self.img_icon_url.startswith("http"):
            return self.img_icon_url
        return ICON_URL_TEMPLATE.format(appid=self.appid, hash=self.img_icon_url)


class PlayerAchievement(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    apiname: str
    achieved: bool = False
    unlocktime: Optional[datetime] = None

    @field_validator("unlocktime", mode="before")
    @classmethod
    def _zero_means_locked(cls, value):
        # Steam reports 0 for locked achievements (and sometimes for unlocked
        # ones when the timestamp is missing)
        if value in (None, 0, "0"):
            return None
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        return value


class SchemaAchievement(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    apiname: str = Field(alias="name")
    display_name: str = Field(default="", alias="displayName")
    description: Optional[str] = None
    icon: str = ""
    icon_gray: str = Field(default="", alias="icongray")


class SteamClient:
    """Async client for the four Steam Web API calls the sync engine needs."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.STEAM_API_KEY
        self.base_url = (base_url or settings.STEAM_API_BASE_URL).rstrip("/")
        self.client = http_client or httpx.AsyncClient(
            timeout=settings.STEAM_HTTP_TIMEOUT,
            follow_redirects=True,
        )

    async def close(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        GET a Steam endpoint and decode its JSON body.
        Non-2xx answers are returned when they still carry a JSON body, since
        GetPlayerAchievements reports "no stats" as HTTP 400 with a payload.
        """
        url = f"{self.base_url}{path}"
        query = {"key": self.api_key, "format": "json", **params}
        log_extra = {"url": url, **params}

        try:
            resp = await self.client.get(url, params=query)
        except httpx.HTTPError as e:
            logger.error(
                "Steam request failed",
                extra={**log_extra, "error": str(e)},
            )
            raise TransportError(f"Steam request to {path} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(
                f"Steam returned an unreadable response for {path} "
                f"(HTTP {resp.status_code})"
            ) from e

        if resp.status_code >= 400 and not isinstance(data, dict):
            raise TransportError(f"Steam returned HTTP {resp.status_code} for {path}")

        logger.debug(
            "Steam request success",
            extra={**log_extra, "status_code": resp.status_code},
        )
        return data

    async def get_owned_games(self, steam_id: str) -> List[OwnedGame]:
        data = await self._get_json(
            "/IPlayerService/GetOwnedGames/v1/",
            {
                "steamid": steam_id,
                "include_appinfo": 1,
                "include_played_free_games": 1,
            },
        )
        response = data.get("response")
        if response is None:
            raise TransportError("GetOwnedGames returned no 'response' object")
        if "games" not in response and "game_count" not in response:
            # Private profiles answer with an empty response object
            raise DataUnavailable(
                "Steam did not return any owned games; is the profile's game details private?"
            )
        return [OwnedGame(**g) for g in response.get("games", [])]

    async def get_recently_played(self, steam_id: str) -> List[int]:
        data = await self._get_json(
            "/IPlayerService/GetRecentlyPlayedGames/v1/",
            # count=0 returns every game from the ~2 week window
            {"steamid": steam_id, "count": 0},
        )
        response = data.get("response")
        if response is None:
            raise TransportError("GetRecentlyPlayedGames returned no 'response' object")
        return [g["appid"] for g in response.get("games", []) if "appid" in g]

    async def get_player_achievements(
        self, steam_id: str, appid: int
    ) -> List[PlayerAchievement]:
        data = await self._get_json(
            "/ISteamUserStats/GetPlayerAchievements/v1/",
            {"steamid": steam_id, "appid": appid},
        )
        playerstats = data.get("playerstats")
        if playerstats is None:
            raise TransportError(f"GetPlayerAchievements returned no stats for {appid}")

        if playerstats.get("success") is False:
            error = playerstats.get("error") or "unknown error"
            if "no stats" in error.lower():
                return []
            raise DataUnavailable(f"Achievements for {appid} unavailable: {error}")

        return [PlayerAchievement(**a) for a in playerstats.get("achievements", [])]

    async def get_schema_for_game(self, appid: int) -> List[SchemaAchievement]:
        data = await self._get_json(
            "/ISteamUserStats/GetSchemaForGame/v2/",
            {"appid": appid, "l": "english"},
        )
        game = data.get("game")
        if game is None:
            raise DataUnavailable(f"No schema available for {appid}")

        stats = game.get("availableGameStats") or {}
        return [SchemaAchievement(**a) for a in stats.get("achievements", [])]
