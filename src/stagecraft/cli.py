"""The `stagecraft` command-line interface."""

import importlib.metadata
from pathlib import Path
import shutil

import click

from .builder import build, make_executor
from .config import BuildSettings
from .exceptions import BuildError, InvalidArchiveError
from .fetcher import ChecksumFetcher
from .loader import DEFAULT_BUILD_FILE, load_build_file
from .packaging.reader import DebReader

try:
    __version__ = importlib.metadata.version("stagecraft")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0-dev"


def _parse_build_args(values: tuple[str, ...]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for value in values:
        name, sep, arg_value = value.partition("=")
        if not sep or not name:
            raise click.BadParameter(
                f"Expected NAME=VALUE, got '{value}'.", param_hint="--build-arg"
            )
        overrides[name] = arg_value
    return overrides


build_file_option = click.option(
    "--file",
    "-f",
    "build_file",
    default=DEFAULT_BUILD_FILE,
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
    help="Path to the stage description file.",
)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(
    __version__,
    "-V",
    "--version",
    prog_name="stagecraft",
    message="%(prog)s version %(version)s",
)
def cli() -> None:
    """Reproducible multi-stage build and packaging tool."""
    pass


@cli.command("build")
@build_file_option
@click.option("--target", "-t", help="Terminal stage to build (default: from the build file).")
@click.option(
    "--build-arg",
    "build_args",
    multiple=True,
    metavar="NAME=VALUE",
    help="Override a declared build argument. Repeatable.",
)
@click.option(
    "--out",
    type=click.Path(resolve_path=True),
    help="Override the output path from the build file.",
)
@click.option("--workers", "-j", type=click.IntRange(min=1), help="Maximum stages run in parallel.")
@click.option(
    "--context",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Override the directory local copies are read from.",
)
def build_command(
    build_file: str,
    target: str | None,
    build_args: tuple[str, ...],
    out: str | None,
    workers: int | None,
    context: str | None,
) -> None:
    """Builds the terminal stage and packages its staging root."""
    overrides = _parse_build_args(build_args)
    click.echo(f"🚀 Building from {build_file}...")
    try:
        loaded = load_build_file(Path(build_file))
        settings = loaded.settings.with_overrides(workers=workers)
        context_dir = Path(context) if context else loaded.context_dir
        archive = build(
            loaded.graph,
            target or loaded.terminal,
            overrides,
            output=Path(out) if out else loaded.output,
            context_dir=context_dir,
            settings=settings,
            staging_path=loaded.staging_path,
            manifest=loaded.manifest,
            executor=make_executor(settings, context_dir),
        )
    except BuildError as e:
        click.secho(f"❌ Build failed:\n{e}", fg="red", err=True)
        raise click.Abort() from e
    click.secho(f"✅ Package built successfully: {archive}", fg="green")


@cli.command("order")
@build_file_option
@click.option("--target", "-t", help="Terminal stage (default: from the build file).")
def order_command(build_file: str, target: str | None) -> None:
    """Prints the resolved stage order and any stages that would not be built."""
    try:
        loaded = load_build_file(Path(build_file))
        terminal = target or loaded.terminal
        plan = loaded.graph.plan(terminal)
        unreachable = loaded.graph.unreachable_stages(terminal)
    except BuildError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        raise click.Abort() from e
    for index, name in enumerate(plan, start=1):
        click.echo(f"{index:>3}. {name}")
    if unreachable:
        click.secho(f"⚠️  Not needed for '{terminal}': {', '.join(unreachable)}", fg="yellow")


@cli.command("fetch")
@click.argument("url")
@click.argument("digest")
@click.option(
    "--dest",
    type=click.Path(dir_okay=False, resolve_path=True),
    help="Where to place the verified file (default: the download cache).",
)
def fetch_command(url: str, digest: str, dest: str | None) -> None:
    """Downloads URL and verifies it against DIGEST."""
    settings = BuildSettings.from_mapping({})
    fetcher = ChecksumFetcher(
        settings.cache_dir,
        retries=settings.fetch_retries,
        backoff=settings.fetch_backoff,
        timeout=settings.fetch_timeout,
    )
    try:
        path = fetcher.fetch(url, digest, Path(dest) if dest else None)
    except BuildError as e:
        click.secho(f"❌ Fetch failed: {e}", fg="red", err=True)
        raise click.Abort() from e
    click.secho(f"✅ Verified: {path}", fg="green")


@cli.command("inspect")
@click.argument(
    "package_file",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
)
def inspect_command(package_file: str) -> None:
    """Prints the control fields and contents of a built package."""
    click.echo(f"🔍 Inspecting package '{package_file}'...")
    try:
        reader = DebReader(Path(package_file))
        click.echo(reader.get_info())
    except InvalidArchiveError as e:
        click.secho(f"❌ Python-based verification failed: {e}", fg="red", err=True)
        raise click.Abort() from e


@cli.command("clean")
def clean_command() -> None:
    """Removes the download cache."""
    click.echo("🧹 Cleaning download cache...")
    downloads_dir = BuildSettings.from_mapping({}).cache_dir / "downloads"
    if downloads_dir.exists():
        shutil.rmtree(downloads_dir)
        click.secho(f"✅ Removed cache directory: {downloads_dir}", fg="green")
    else:
        click.secho("i️ Cache directory not found, nothing to clean.", fg="yellow")


main = cli
