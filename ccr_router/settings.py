from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    router_config_path: str = "config.yaml"
    router_host: str = "127.0.0.1"
    router_port: int = 3456
    session_cache_max_sessions: int = 100

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
