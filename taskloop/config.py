"""Configuration settings for taskloop."""

from pathlib import Path

from pydantic_settings import BaseSettings

_DATA_DIR = Path.home() / ".taskloop"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = f"sqlite+aiosqlite:///{_DATA_DIR / 'taskloop.db'}"
    database_echo: bool = False

    # Redis broadcast (conversation event fan-out)
    redis_url: str = "redis://localhost:6379/0"
    redis_broadcast_enabled: bool = False

    # Claude CLI
    claude_cmd: str = "claude"
    permission_mode: str = "bypassPermissions"
    session_timeout: float = 30.0  # seconds to wait for a session id

    # Agent chaining
    chain_delay: float = 1.0  # seconds between a completed phase and the next

    # Push notifications (OneSignal)
    onesignal_app_id: str | None = None
    onesignal_rest_api_key: str | None = None
    onesignal_api_url: str = "https://api.onesignal.com"
    notification_timeout: float = 10.0

    class Config:
        env_prefix = "TASKLOOP_"
        env_file = ".env"


# Global settings instance
settings = Settings()
