"""Run-wide settings, layered from the build file, the environment and the CLI."""

from collections.abc import Mapping
import os
from pathlib import Path
from typing import Any

from attrs import define, evolve, field

from .exceptions import BuildFileError

ENV_WORKERS = "STAGECRAFT_WORKERS"
ENV_CACHE_DIR = "STAGECRAFT_CACHE_DIR"
ENV_SOURCE_DATE_EPOCH = "SOURCE_DATE_EPOCH"


def _get_cache_dir() -> Path:
    """Returns the user-specific cache directory for stagecraft downloads."""
    return Path.home() / ".cache" / "stagecraft"


def _default_workers() -> int:
    return min(os.cpu_count() or 1, 4)


def _optional_path(value: Any) -> Path | None:
    return None if value is None else Path(value)


@define(frozen=True, slots=True)
class BuildSettings:
    workers: int = field(factory=_default_workers)
    cache_dir: Path = field(factory=_get_cache_dir, converter=Path)
    fetch_retries: int = 3
    fetch_backoff: float = 0.5
    fetch_timeout: float = 60.0
    command_timeout: float | None = None
    source_date_epoch: int = 0
    log_dir: Path | None = field(default=None, converter=_optional_path)

    def __attrs_post_init__(self) -> None:
        if self.workers < 1:
            raise BuildFileError(f"'workers' must be at least 1, got {self.workers}.")
        if self.fetch_retries < 0:
            raise BuildFileError("'fetch_retries' cannot be negative.")

    @classmethod
    def from_mapping(
        cls,
        table: Mapping[str, Any],
        environ: Mapping[str, str] | None = None,
        base_dir: Path | None = None,
    ) -> "BuildSettings":
        """Builds settings from a `[build]` table, then applies environment overrides."""
        environ = os.environ if environ is None else environ
        known = {a.name for a in cls.__attrs_attrs__}
        values = {k: v for k, v in table.items() if k in known}

        if "source_date_epoch" not in values and ENV_SOURCE_DATE_EPOCH in environ:
            values["source_date_epoch"] = environ[ENV_SOURCE_DATE_EPOCH]
        if ENV_WORKERS in environ:
            values["workers"] = environ[ENV_WORKERS]
        if ENV_CACHE_DIR in environ:
            values["cache_dir"] = environ[ENV_CACHE_DIR]

        try:
            for name in ("workers", "fetch_retries", "source_date_epoch"):
                if name in values:
                    values[name] = int(values[name])
            for name in ("fetch_backoff", "fetch_timeout", "command_timeout"):
                if values.get(name) is not None:
                    values[name] = float(values[name])
        except (TypeError, ValueError) as e:
            raise BuildFileError(f"Invalid [build] setting: {e}") from e

        if base_dir is not None:
            for name in ("cache_dir", "log_dir"):
                if values.get(name) is not None:
                    values[name] = base_dir / Path(values[name]).expanduser()
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "BuildSettings":
        """Returns a copy with every non-None override applied (CLI precedence)."""
        return evolve(self, **{k: v for k, v in overrides.items() if v is not None})
