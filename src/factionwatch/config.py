from __future__ import annotations

from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_csv(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, int):
        return [str(value)]
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    raise ValueError("expected a comma separated string or a list")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FACTIONWATCH_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    db_path: Path = Path("data/factionwatch.sqlite3")

    api_base_url: str = "https://api.torn.com"
    request_timeout_seconds: float = 15.0
    default_calls_per_minute: int = 20
    max_calls_per_minute: int = 100
    rate_limit_window_seconds: float = 60.0
    quarantine_seconds: float = 300.0
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    upstream_cooldown_seconds: float = 30.0

    max_concurrency: int = 10
    settle_delay_seconds: float = 30.0
    activity_window_seconds: int = 900
    shutdown_timeout_seconds: float = 60.0

    retention_days: int = 30
    prune_probability: float = 0.01
    inactive_skip_probability: float = 0.75
    inactive_avg_threshold: float = 2.0
    inactive_max_threshold: int = 5

    ranking_refresh_days: int = 7
    tracked_ranks: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["diamond", "platinum"]
    )
    ranking_stop_after_untracked: int = 50
    ranking_max_pages: int = 20
    ranking_page_size: int = 100
    ranking_max_entries: int = 5000
    ranking_page_delay_seconds: float = 0.5

    cache_ttl_seconds: float = 900.0
    cache_max_size: int = 500

    seed_api_keys: Annotated[list[str], NoDecode] = Field(default_factory=list)
    seed_factions: Annotated[list[int], NoDecode] = Field(default_factory=list)

    @field_validator("tracked_ranks", mode="before")
    @classmethod
    def _parse_ranks(cls, value: object) -> list[str]:
        ranks = [r.lower() for r in _split_csv(value)]
        if not ranks:
            raise ValueError("FACTIONWATCH_TRACKED_RANKS must name at least one rank")
        return ranks

    @field_validator("seed_api_keys", mode="before")
    @classmethod
    def _parse_keys(cls, value: object) -> list[str]:
        return _split_csv(value)

    @field_validator("seed_factions", mode="before")
    @classmethod
    def _parse_factions(cls, value: object) -> list[int]:
        try:
            return [int(v) for v in _split_csv(value)]
        except ValueError as exc:
            raise ValueError("FACTIONWATCH_SEED_FACTIONS must be comma separated ids") from exc


settings = Settings()
