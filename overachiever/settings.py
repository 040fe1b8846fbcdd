from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    STEAM_API_KEY: str = ""
    STEAM_ID: str = ""
    STEAM_API_BASE_URL: str = "https://api.steampowered.com"
    STEAM_HTTP_TIMEOUT: float = 60.0
    SCRAPE_DELAY_MS: int = 150
    STALE_UPDATE_DAYS: int = 14
    LOG_ENTRY_LIMIT: int = 50
    DATABASE_URL: str = "sqlite+aiosqlite:///data/overachiever.db"
    UPDATE_INTERVAL_HOURS: int = 0
    API_SECRET_KEY: str = ""
    LOG_LEVEL: str = "INFO"
    LOG_JSON_FORMAT: bool = True
    LOG_DIR: str = "data/logs"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def scrape_delay_seconds(self) -> float:
        return self.SCRAPE_DELAY_MS / 1000.0


settings = Settings()
