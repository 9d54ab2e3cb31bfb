from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "HabitChat API"
    debug: bool = True
    log_level: str = "INFO"
    log_json: bool | None = None
    api_prefix: str = "/api"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    database_url: str = "sqlite:///./habitchat.db"
    redis_url: str = "redis://localhost:6379/0"

    secret_key: str = "change-this-secret-key"
    access_token_expire_minutes: int = 60 * 24
    rate_limit_enabled: bool = True
    rate_limit_global_limit: int = 300
    rate_limit_global_window_seconds: int = 60
    rate_limit_auth_limit: int = 20
    rate_limit_auth_window_seconds: int = 60
    websocket_connect_limit: int = 20
    websocket_connect_window_seconds: int = 60
    websocket_event_limit: int = 240
    websocket_event_window_seconds: int = 60
    chat_send_limit: int = 30
    chat_send_window_seconds: int = 10
    websocket_require_auth_payload_token: bool = True
    websocket_allow_query_token: bool = False
    presence_backend: str = "memory"
    presence_ttl_seconds: int = 120

    uid_generation_attempts: int = 10
    online_window_seconds: int = 300
    max_message_length: int = 4000
    message_page_size_default: int = 50
    message_page_size_max: int = 100
    notification_page_size_max: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
