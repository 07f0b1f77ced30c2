from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    # Game server endpoints (REST + push channel)
    api_base_url: str = "http://localhost:8080"
    ws_base_url: str = "ws://localhost:8080"
    http_timeout: float = 10.0

    # Push channel retry policy: fixed interval, bounded attempts
    max_reconnect_attempts: int = 5
    reconnect_interval: float = 3.0

    # Periodic snapshot pull while a game is running
    poll_interval: float = 3.0
    # How long a finished vote stays on screen before returning to the game view
    vote_result_display: float = 3.0
    # Full-screen exchange animations allowed per session (3-round game → 2 exchanges)
    exchange_animation_cap: int = 2

    room_code_length: int = 6
    # Per-room cache of player id, owner flag and history, one JSON file per room
    cache_dir: str = ".tworooms_cache"

    # CORS origins for the local companion app
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
