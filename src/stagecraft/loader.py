"""Reads a TOML build description into a BuildGraph plus run settings."""

from collections.abc import Mapping
from pathlib import Path
import tomllib
from typing import Any

from attrs import define

from .config import BuildSettings
from .crypto import parse_digest
from .exceptions import BuildFileError
from .graph import BuildGraph
from .models import (
    SCRATCH_BASE,
    BuildArg,
    CopyOperation,
    ExternalDependency,
    PackageManifest,
    Stage,
)

DEFAULT_BUILD_FILE = "stagecraft.toml"
DEFAULT_OUTPUT = "dist"

_STAGE_KEYS = frozenset(
    {"name", "base", "args", "env", "commands", "copies", "fetches", "outputs", "workdir"}
)
_BUILD_ONLY_KEYS = frozenset({"terminal", "output", "staging_path", "context"})


@define(slots=True)
class BuildFile:
    path: Path
    graph: BuildGraph
    settings: BuildSettings
    terminal: str
    output: Path
    context_dir: Path
    staging_path: str | None = None
    manifest: PackageManifest | None = None


def _require_str(table: Mapping[str, Any], key: str, where: str) -> str:
    value = table.get(key)
    if not isinstance(value, str) or not value:
        raise BuildFileError(f"{where}: '{key}' must be a non-empty string.")
    return value


def _str_list(value: Any, key: str, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise BuildFileError(f"{where}: '{key}' must be a list of strings.")
    return value


def _parse_arg(value: Any, where: str) -> BuildArg:
    if isinstance(value, str):
        name, sep, default = value.partition("=")
        return BuildArg(name.strip(), default if sep else None)
    if isinstance(value, Mapping):
        default = value.get("default")
        return BuildArg(_require_str(value, "name", where), None if default is None else str(default))
    raise BuildFileError(f"{where}: args entries must be strings or tables.")


def _parse_copy(value: Any, where: str) -> CopyOperation:
    if not isinstance(value, Mapping):
        raise BuildFileError(f"{where}: copies entries must be tables.")
    return CopyOperation(
        source=_require_str(value, "from", where),
        src=_require_str(value, "src", where),
        dst=_require_str(value, "dst", where),
    )


def _parse_fetch(value: Any, where: str) -> ExternalDependency:
    if not isinstance(value, Mapping):
        raise BuildFileError(f"{where}: fetches entries must be tables.")
    digest = _require_str(value, "digest", where)
    # Digests may carry ${ARG} references; only literal ones are checked here.
    if "$" not in digest:
        try:
            parse_digest(digest)
        except ValueError as e:
            raise BuildFileError(f"{where}: {e}") from e
    return ExternalDependency(
        url=_require_str(value, "url", where),
        digest=digest,
        destination=_require_str(value, "destination", where),
    )


def parse_stage(table: Mapping[str, Any], index: int) -> Stage:
    where = f"stage #{index}"
    if not isinstance(table, Mapping):
        raise BuildFileError(f"{where}: must be a table.")
    name = _require_str(table, "name", where)
    where = f"stage '{name}'"
    unknown = set(table) - _STAGE_KEYS
    if unknown:
        raise BuildFileError(f"{where}: unknown keys {sorted(unknown)}.")

    env = table.get("env", {})
    if not isinstance(env, Mapping):
        raise BuildFileError(f"{where}: 'env' must be a table.")

    return Stage(
        name=name,
        base=table.get("base", SCRATCH_BASE),
        args=[_parse_arg(a, where) for a in table.get("args", [])],
        env={str(k): str(v) for k, v in env.items()},
        commands=_str_list(table.get("commands"), "commands", where),
        copies=[_parse_copy(c, where) for c in table.get("copies", [])],
        fetches=[_parse_fetch(f, where) for f in table.get("fetches", [])],
        outputs=_str_list(table.get("outputs"), "outputs", where),
        workdir=table.get("workdir", ""),
    )


def load_build_file(path: Path, environ: Mapping[str, str] | None = None) -> BuildFile:
    path = Path(path)
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise BuildFileError(f"Build file not found: {path}") from e
    except tomllib.TOMLDecodeError as e:
        raise BuildFileError(f"Invalid TOML in {path}: {e}") from e

    stages = data.get("stage", [])
    if not isinstance(stages, list) or not stages:
        raise BuildFileError(f"{path} declares no [[stage]] tables.")

    graph = BuildGraph()
    for index, table in enumerate(stages):
        graph.add_stage(parse_stage(table, index))

    base_dir = path.parent.resolve()
    build_conf = data.get("build", {})
    settings = BuildSettings.from_mapping(
        {k: v for k, v in build_conf.items() if k not in _BUILD_ONLY_KEYS},
        environ=environ,
        base_dir=base_dir,
    )

    package_conf = data.get("package")
    manifest = None
    if package_conf:
        known = {"package", "version", "architecture", "maintainer", "description"}
        manifest = PackageManifest(
            **{k: str(v) for k, v in package_conf.items() if k in known},
            extra_fields={k: str(v) for k, v in package_conf.items() if k not in known},
        )

    return BuildFile(
        path=path,
        graph=graph,
        settings=settings,
        terminal=build_conf.get("terminal") or graph.names[-1],
        output=base_dir / build_conf.get("output", DEFAULT_OUTPUT),
        context_dir=base_dir / build_conf.get("context", "."),
        staging_path=build_conf.get("staging_path"),
        manifest=manifest,
    )
