from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Literal


class Settings(BaseSettings):
    # Public origin of the voting client; join links are built from it
    client_url: str = "http://localhost:5173"
    # CORS origins: set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    story_config_path: str = "story-config.json"
    video_dir: str = "public/videos"
    video_base_url: str = "/videos"

    session_ttl_seconds: int = 2 * 60 * 60
    reap_interval_seconds: int = 10 * 60

    # Pause between announcing the winner and starting the video
    results_reveal_seconds: float = 3.0
    # fixed = wait playback_settle_seconds; signal = wait for the host's videoEnded
    playback_policy: Literal["fixed", "signal"] = "fixed"
    playback_settle_seconds: float = 30.0
    playback_signal_timeout_seconds: float = 300.0

    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
