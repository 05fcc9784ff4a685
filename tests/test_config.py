"""Tests for layered run settings."""

from pathlib import Path

import pytest

from stagecraft.config import BuildSettings
from stagecraft.exceptions import BuildFileError


def test_defaults() -> None:
    settings = BuildSettings()
    assert 1 <= settings.workers <= 4
    assert settings.cache_dir == Path.home() / ".cache" / "stagecraft"
    assert settings.source_date_epoch == 0
    assert settings.command_timeout is None


def test_from_mapping_coerces_and_resolves_paths(tmp_path: Path) -> None:
    settings = BuildSettings.from_mapping(
        {"workers": "3", "command_timeout": 30, "log_dir": "logs", "unknown": True},
        environ={},
        base_dir=tmp_path,
    )
    assert settings.workers == 3
    assert settings.command_timeout == 30.0
    assert settings.log_dir == tmp_path / "logs"


def test_environment_overrides_build_table(tmp_path: Path) -> None:
    environ = {
        "STAGECRAFT_WORKERS": "1",
        "STAGECRAFT_CACHE_DIR": str(tmp_path / "cache"),
        "SOURCE_DATE_EPOCH": "1700000000",
    }
    settings = BuildSettings.from_mapping({"workers": 8}, environ=environ)
    assert settings.workers == 1
    assert settings.cache_dir == tmp_path / "cache"
    assert settings.source_date_epoch == 1700000000


def test_explicit_epoch_wins_over_environment() -> None:
    settings = BuildSettings.from_mapping(
        {"source_date_epoch": 5}, environ={"SOURCE_DATE_EPOCH": "9"}
    )
    assert settings.source_date_epoch == 5


def test_with_overrides_ignores_none() -> None:
    settings = BuildSettings(workers=2)
    assert settings.with_overrides(workers=None).workers == 2
    assert settings.with_overrides(workers=6).workers == 6


@pytest.mark.parametrize(
    "table",
    [{"workers": 0}, {"workers": "many"}, {"fetch_retries": -1}, {"fetch_timeout": "soon"}],
)
def test_invalid_settings(table: dict) -> None:
    with pytest.raises(BuildFileError):
        BuildSettings.from_mapping(table, environ={})
