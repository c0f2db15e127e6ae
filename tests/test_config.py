import pytest
from pydantic import ValidationError

from factionwatch.config import Settings


def test_read_lists_from_env_file(tmp_path) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text(
        "FACTIONWATCH_SEED_API_KEYS=abcd1234, efgh5678\n"
        "FACTIONWATCH_SEED_FACTIONS=11,22\n"
        "FACTIONWATCH_TRACKED_RANKS=Diamond\n"
        "FACTIONWATCH_MAX_CONCURRENCY=4\n",
        encoding="utf-8",
    )

    settings = Settings(_env_file=env_path)
    assert settings.seed_api_keys == ["abcd1234", "efgh5678"]
    assert settings.seed_factions == [11, 22]
    assert settings.tracked_ranks == ["diamond"]
    assert settings.max_concurrency == 4


def test_defaults(tmp_path) -> None:
    settings = Settings(_env_file=tmp_path / "missing.env")
    assert settings.tracked_ranks == ["diamond", "platinum"]
    assert settings.default_calls_per_minute == 20
    assert settings.retention_days == 30
    assert settings.seed_api_keys == []


def test_tracked_ranks_must_not_be_empty(tmp_path) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text("FACTIONWATCH_TRACKED_RANKS= , \n", encoding="utf-8")
    with pytest.raises(ValidationError):
        Settings(_env_file=env_path)


def test_bad_faction_ids_rejected(tmp_path) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text("FACTIONWATCH_SEED_FACTIONS=12,abc\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        Settings(_env_file=env_path)
