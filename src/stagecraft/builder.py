"""The build invocation surface: run the graph, then package the terminal stage."""

from collections.abc import Mapping
from pathlib import Path
import tempfile

from pyvider.telemetry import logger

from .config import BuildSettings
from .exceptions import ArtifactNotFoundError, EmptyStagingRootError
from .executor import BaseImageProvider, CommandRunner, StageExecutor
from .fetcher import ChecksumFetcher
from .graph import BuildGraph
from .models import PackageManifest, normalize_path
from .packaging.packager import Packager
from .scheduler import BuildResult
from .store import ArtifactStore
from .view import FilesystemView


def make_executor(
    settings: BuildSettings,
    context_dir: Path,
    *,
    store: ArtifactStore | None = None,
    fetcher: ChecksumFetcher | None = None,
    runner: CommandRunner | None = None,
    images: BaseImageProvider | None = None,
) -> StageExecutor:
    return StageExecutor(
        store or ArtifactStore(),
        fetcher
        or ChecksumFetcher(
            settings.cache_dir,
            retries=settings.fetch_retries,
            backoff=settings.fetch_backoff,
            timeout=settings.fetch_timeout,
        ),
        context_dir=context_dir,
        runner=runner,
        images=images,
        command_timeout=settings.command_timeout,
        log_dir=settings.log_dir,
    )


def staging_view(result: BuildResult, staging_path: str | None = None) -> FilesystemView:
    """Returns the terminal stage output that holds the staging root."""
    if not result.outcome.artifacts:
        raise EmptyStagingRootError(f"stage '{result.terminal}' declares no outputs")
    key = normalize_path(staging_path) if staging_path else next(iter(result.outcome.artifacts))
    if key not in result.outcome.artifacts:
        raise ArtifactNotFoundError(result.terminal, key, "staging path is not a declared output")
    artifact = result.store.get(result.terminal, key)
    return FilesystemView({path: entry for path, entry in artifact.entries if path})


def build(
    graph: BuildGraph,
    terminal: str,
    arg_overrides: Mapping[str, str] | None = None,
    *,
    output: Path,
    context_dir: Path | None = None,
    settings: BuildSettings | None = None,
    staging_path: str | None = None,
    manifest: PackageManifest | None = None,
    executor: StageExecutor | None = None,
) -> Path:
    """
    Builds `terminal` and everything it depends on, then packages it.

    Returns the archive path. Every failure surfaces as a typed
    `BuildError` subclass naming the stage, command, URL or field at fault.
    """
    settings = settings or BuildSettings()
    executor = executor or make_executor(settings, context_dir or Path.cwd())

    result = graph.run(terminal, arg_overrides, executor=executor, workers=settings.workers)
    view = staging_view(result, staging_path)

    with tempfile.TemporaryDirectory(prefix="stagecraft_staging_") as temp_dir_str:
        staging_root = Path(temp_dir_str) / "staging"
        staging_root.mkdir()
        view.materialize(staging_root)
        archive = Packager(settings.source_date_epoch).assemble(staging_root, manifest, output)

    logger.info(f"Build of '{terminal}' complete", stages=result.executed, archive=str(archive))
    return archive
