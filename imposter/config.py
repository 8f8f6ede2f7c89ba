from __future__ import annotations

from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3000
    allowed_origins: List[str] = ["*"]
    log_level: str = "INFO"

    # Rooms
    max_players: int = 20
    room_code_length: int = 6
    name_max_length: int = 24
    chat_max_length: int = 200

    # Seconds between a clean elimination and the next hint round
    elimination_delay: float = 5.0

    # "lobby": host settings changes only before the game starts
    # "any": changes apply immediately whatever the phase
    settings_policy: Literal["lobby", "any"] = "lobby"

    model_config = SettingsConfigDict(
        env_prefix="IMPOSTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )


settings = Settings()
