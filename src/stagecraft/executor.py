"""Runs a single stage against its own isolated filesystem view."""

from collections.abc import Mapping
import os
from pathlib import Path
import posixpath
import string
import subprocess
import tempfile
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlparse

from attrs import define, field
from pyvider.telemetry import logger

from .exceptions import (
    ContextPathError,
    MissingOutputError,
    StageCommandError,
    UnresolvedBuildArgError,
)
from .fetcher import ChecksumFetcher
from .models import IMAGE_PREFIX, Artifact, FileEntry, Stage, normalize_path
from .store import ArtifactStore, make_artifact
from .view import FilesystemView

if TYPE_CHECKING:
    from .scheduler import BuildRun

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


class _Template(string.Template):
    # Matches the ${NAME} / $NAME forms of the build description syntax.
    flags = 0
    idpattern = r"(?a:[_A-Za-z][_A-Za-z0-9]*)"


def substitute(text: str, values: Mapping[str, str]) -> str:
    """Replaces $NAME / ${NAME} for known names only; shell variables pass through."""
    return _Template(text).safe_substitute(values)


def resolve_args(
    stage: Stage,
    overrides: Mapping[str, str],
    inherited: Mapping[str, str],
) -> dict[str, str]:
    """
    Resolves a stage's declared build args.

    Precedence: caller override, then the stage default (which may refer to
    earlier args of the same stage), then the value the base stage resolved
    for the same name.
    """
    resolved: dict[str, str] = {}
    for arg in stage.args:
        if arg.name in overrides:
            resolved[arg.name] = str(overrides[arg.name])
        elif arg.default is not None:
            resolved[arg.name] = substitute(arg.default, resolved)
        elif arg.name in inherited:
            resolved[arg.name] = inherited[arg.name]
        else:
            raise UnresolvedBuildArgError(stage.name, arg.name)
    return resolved


@define(frozen=True, slots=True)
class CommandResult:
    exit_status: int | None
    stdout: str = ""
    stderr: str = ""


class CommandRunner(Protocol):
    def run(
        self,
        command: str,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> CommandResult: ...


class SubprocessRunner:
    """Runs each command as an opaque `sh -c` process."""

    def __init__(self, shell: str = "sh") -> None:
        self.shell = shell

    def run(
        self,
        command: str,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> CommandResult:
        try:
            result = subprocess.run(
                [self.shell, "-c", command],
                cwd=cwd,
                env=dict(env),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(None, _as_text(e.stdout), _as_text(e.stderr))
        return CommandResult(result.returncode, result.stdout, result.stderr)


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value


class BaseImageProvider:
    """Maps opaque `image:<ref>` identifiers to pristine views."""

    def __init__(self, images: Mapping[str, FilesystemView] | None = None) -> None:
        self._images = dict(images or {})

    def register(self, reference: str, view: FilesystemView) -> None:
        self._images[reference] = view

    def resolve(self, base: str, label: str) -> FilesystemView:
        reference = base[len(IMAGE_PREFIX):] if base.startswith(IMAGE_PREFIX) else base
        image = self._images.get(reference)
        if image is None:
            return FilesystemView(label=label)
        return image.copy(label=label)


@define(slots=True)
class StageOutcome:
    stage_id: str
    artifacts: dict[str, Artifact]
    view: FilesystemView
    args: dict[str, str] = field(factory=dict)
    env: dict[str, str] = field(factory=dict)


class StageExecutor:
    def __init__(
        self,
        store: ArtifactStore,
        fetcher: ChecksumFetcher,
        *,
        context_dir: Path,
        runner: CommandRunner | None = None,
        images: BaseImageProvider | None = None,
        command_timeout: float | None = None,
        log_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.context_dir = Path(context_dir).resolve()
        self.runner = runner or SubprocessRunner()
        self.images = images or BaseImageProvider()
        self.command_timeout = command_timeout
        self.log_dir = log_dir

    def execute(
        self,
        stage: Stage,
        resolved_args: Mapping[str, str],
        run: "BuildRun",
        inherited_args: Mapping[str, str] | None = None,
    ) -> StageOutcome:
        """
        Builds `stage` and publishes its declared outputs.

        `run` is the in-progress build; asking it for an upstream stage
        builds that stage first if it has not run yet.
        """
        logger.info(f"Stage '{stage.name}' starting", base=stage.base)
        args = dict(resolved_args)

        if stage.base_is_stage:
            upstream = run.require(stage.base)
            view = upstream.view.copy(label=stage.name)
            env = dict(upstream.env)
        else:
            view = self.images.resolve(stage.base, stage.name)
            env = {}

        ambient = {"PATH": os.environ.get("PATH", DEFAULT_PATH)}
        for name, template in stage.env:
            env[name] = substitute(template, {**ambient, **args, **env})
        values = {**args, **env}

        for copy in stage.copies:
            src = substitute(copy.src, values)
            dst = substitute(copy.dst, values)
            if copy.is_local:
                entries = self._local_entries(src)
            else:
                run.require(copy.source)
                entries = self._stage_entries(copy.source, src)
            view.graft(self._copy_destination(view, src, dst, entries), entries)

        for dep in stage.fetches:
            url = substitute(dep.url, values)
            local_path = self.fetcher.fetch(url, substitute(dep.digest, values))
            destination = substitute(dep.destination, values)
            if destination.endswith("/"):
                destination += posixpath.basename(urlparse(url).path)
            view.add_file(destination, local_path.read_bytes())

        if stage.commands:
            view = self._run_commands(stage, view, args, env)

        artifacts: dict[str, Artifact] = {}
        for output in stage.outputs:
            key = normalize_path(substitute(output, values))
            entries = view.subtree(key)
            if not entries:
                raise MissingOutputError(stage.name, output, "declared output missing after commands")
            artifacts[key] = make_artifact(stage.name, key, entries)

        self.store.publish(stage.name, artifacts)
        logger.info(f"Stage '{stage.name}' finished", outputs=len(artifacts))
        return StageOutcome(
            stage_id=stage.name,
            artifacts=artifacts,
            view=view,
            args={**dict(inherited_args or {}), **args},
            env=env,
        )

    def _local_entries(self, src: str) -> list[tuple[str, FileEntry]]:
        source = (self.context_dir / src.lstrip("/")).resolve()
        if source != self.context_dir and self.context_dir not in source.parents:
            raise ContextPathError(f"Local copy source '{src}' escapes the build context.")
        if source.is_dir():
            return FilesystemView.capture(source).subtree("")
        if source.is_file():
            mode = source.stat().st_mode & 0o777
            return [("", FileEntry(kind="file", data=source.read_bytes(), mode=mode))]
        raise ContextPathError(f"Local copy source '{src}' not found in {self.context_dir}.")

    def _stage_entries(self, stage_id: str, src: str) -> list[tuple[str, FileEntry]]:
        artifact, rel = self.store.find_containing(stage_id, src)
        if not rel:
            return list(artifact.entries)
        prefix = rel + "/"
        return [
            (path[len(rel):].lstrip("/"), entry)
            for path, entry in artifact.entries
            if path == rel or path.startswith(prefix)
        ]

    @staticmethod
    def _copy_destination(
        view: FilesystemView, src: str, dst: str, entries: list[tuple[str, FileEntry]]
    ) -> str:
        single_file = len(entries) == 1 and not entries[0][1].is_dir
        if single_file and (dst.endswith("/") or view.is_dir(dst)):
            return posixpath.join(normalize_path(dst), posixpath.basename(normalize_path(src)))
        return dst

    def _run_commands(
        self,
        stage: Stage,
        view: FilesystemView,
        args: Mapping[str, str],
        env: Mapping[str, str],
    ) -> FilesystemView:
        with tempfile.TemporaryDirectory(prefix=f"stagecraft_{stage.name}_") as temp_dir_str:
            root = Path(temp_dir_str) / "root"
            root.mkdir()
            view.materialize(root)

            # $HOME and $STAGE_ROOT in env values only exist once the root does.
            root_vars = {"HOME": str(root), "STAGE_ROOT": str(root)}
            env = {name: substitute(value, root_vars) for name, value in env.items()}
            values = {**args, **env}
            cwd = root / normalize_path(substitute(stage.workdir, values))
            cwd.mkdir(parents=True, exist_ok=True)

            process_env = {
                "PATH": os.environ.get("PATH", DEFAULT_PATH),
                "HOME": str(root),
                **args,
                **env,
                "STAGE_ROOT": str(root),
            }
            for index, template in enumerate(stage.commands):
                command = substitute(template, values)
                logger.debug("Running command", stage=stage.name, index=index, command=command)
                result = self.runner.run(command, cwd, process_env, self.command_timeout)
                self._record_output(stage.name, index, command, result)
                if result.exit_status != 0:
                    logger.error(
                        f"Stage '{stage.name}' command #{index} failed",
                        exit_status=result.exit_status,
                    )
                    raise StageCommandError(
                        stage.name, index, result.exit_status, command, result.stderr.strip()
                    )
            return FilesystemView.capture(root, label=stage.name)

    def _record_output(
        self, stage_id: str, index: int, command: str, result: CommandResult
    ) -> None:
        if result.stdout:
            logger.debug("Command stdout", stage=stage_id, index=index, output=result.stdout.strip())
        if result.stderr:
            logger.debug("Command stderr", stage=stage_id, index=index, output=result.stderr.strip())
        if self.log_dir is None:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        with (self.log_dir / f"{stage_id}.log").open("a") as log:
            log.write(f"$ {command}\n{result.stdout}{result.stderr}")
            log.write(f"[exit status: {result.exit_status}]\n")
