from pydantic import AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "dev"
    REDIS_URL: AnyUrl | None = None
    SERVICE_PORT: int = 8080
    LOG_JSON: bool = True
    LOG_LEVEL: str = "INFO"
    # Backend adapter selection: "memory" or "redis"
    STORE_ADAPTER: Literal["memory", "redis"] = "memory"
    FEED_ADAPTER: Literal["memory", "redis"] = "memory"
    # Realtime feed reconnect backoff ceiling (seconds)
    FEED_RECONNECT_MAX_SECONDS: float = 30.0
    # Snapshot stream
    WS_PING_INTERVAL: int = 30
    WS_RATE_LIMIT_MESSAGES: int = 100
    WS_RATE_LIMIT_WINDOW: int = 60

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
