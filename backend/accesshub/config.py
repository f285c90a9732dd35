# ==============================================================================
# == backend/accesshub/config.py - Runtime settings                         ==
# ==============================================================================

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- MQTT transport ---
    MQTT_ENABLED: bool = True
    MQTT_HOST: str = "localhost"; MQTT_PORT: int = 1883
    MQTT_USERNAME: str | None = None; MQTT_PASSWORD: str | None = None
    MQTT_CLIENT_ID: str | None = None
    MQTT_KEEPALIVE: int = 60
    MQTT_NAMESPACE: str = "fingerprint"

    # --- Storage ---
    DATABASE_URL: str = "sqlite+aiosqlite:///./accesshub.db"
    DB_POOL_SIZE: int = 5; DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30; DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str | None = "app.log"

    # --- Query / broadcast limits ---
    LOG_LIMIT_DEFAULT: int = 50
    LOG_LIMIT_MAX: int = 100
    SUBSCRIBER_QUEUE_SIZE: int = 256

    # --- Command delivery ---
    COMMAND_PUSH_ENABLED: bool = True

    # --- Template extraction ---
    # Observed device captures need anywhere between 40 and 150 here.
    TEMPLATE_PAGE_SIZE: int = 256
    TEMPLATE_PAGE_COUNT: int = 2
    TEMPLATE_PAGE_THRESHOLD: int = 40

    @property
    def command_topic_suffix(self) -> str:
        return "command"

    def command_topic(self, device_id: str) -> str:
        return f"{self.MQTT_NAMESPACE}/{device_id}/{self.command_topic_suffix}"

    @property
    def template_size(self) -> int:
        return self.TEMPLATE_PAGE_SIZE * self.TEMPLATE_PAGE_COUNT


@lru_cache
def get_settings() -> Settings:
    return Settings()
