"""Pytest fixtures for the entire stagecraft test suite."""

from collections.abc import Callable, Mapping
from pathlib import Path

import httpx
import pytest

from stagecraft.executor import CommandResult, StageExecutor
from stagecraft.fetcher import ChecksumFetcher
from stagecraft.models import CopyOperation, Stage
from stagecraft.store import ArtifactStore

CONTROL_TEXT = (
    "Package: cross-tools\n"
    "Version: 0.20.0\n"
    "Architecture: riscv64\n"
    "Maintainer: Build Team <build@example.com>\n"
    "Description: Cross-compiled guest tools\n"
)


@pytest.fixture(autouse=True)
def isolated_cache(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keeps every test away from the real ~/.cache download directory."""
    cache_dir = tmp_path / "cache"
    monkeypatch.setenv("STAGECRAFT_CACHE_DIR", str(cache_dir))
    monkeypatch.delenv("STAGECRAFT_WORKERS", raising=False)
    monkeypatch.delenv("SOURCE_DATE_EPOCH", raising=False)
    return cache_dir


@pytest.fixture
def store() -> ArtifactStore:
    return ArtifactStore()


@pytest.fixture
def offline_client() -> httpx.Client:
    """An httpx client that answers every request with 404."""
    return httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(404)))


@pytest.fixture
def fetcher(isolated_cache: Path, offline_client: httpx.Client) -> ChecksumFetcher:
    return ChecksumFetcher(isolated_cache, client=offline_client, sleep=lambda _: None)


@pytest.fixture
def control_text() -> str:
    """A complete DEBIAN/control paragraph for the cross-tools package."""
    return CONTROL_TEXT


@pytest.fixture
def context_dir(tmp_path: Path) -> Path:
    """A local build context holding the package control file and a source tree."""
    ctx = tmp_path / "context"
    (ctx / "src").mkdir(parents=True)
    (ctx / "src" / "main.c").write_text("int main(void) { return 0; }\n")
    (ctx / "control").write_text(CONTROL_TEXT)
    return ctx


@pytest.fixture
def executor(store: ArtifactStore, fetcher: ChecksumFetcher, context_dir: Path) -> StageExecutor:
    return StageExecutor(store, fetcher, context_dir=context_dir)


@pytest.fixture
def toolchain_stages() -> list[Stage]:
    """
    base -> (c-tools, rust-tools) -> pack, plus a stage nothing depends on.
    """
    return [
        Stage(
            name="base",
            base="image:ubuntu:22.04",
            args=[],
            commands=["mkdir -p opt/toolchain", "echo gcc-12 > opt/toolchain/VERSION"],
            outputs=["/opt/toolchain"],
        ),
        Stage(
            name="c-tools",
            base="base",
            commands=[
                "mkdir -p out/bin",
                "cp opt/toolchain/VERSION out/bin/c-tool",
                "chmod 755 out/bin/c-tool",
            ],
            outputs=["/out/bin"],
        ),
        Stage(
            name="rust-tools",
            base="base",
            commands=["mkdir -p out/bin", "echo rustc > out/bin/rust-tool"],
            outputs=["/out/bin"],
        ),
        Stage(name="docs", commands=["exit 1"], outputs=["/docs"]),
        Stage(
            name="pack",
            copies=[
                CopyOperation("c-tools", "/out/bin", "/staging/usr/bin"),
                CopyOperation("rust-tools", "/out/bin", "/staging/usr/bin"),
                CopyOperation("local", "control", "/staging/DEBIAN/control"),
            ],
            outputs=["/staging"],
        ),
    ]


class ScriptedRunner:
    """Records commands and returns canned results instead of spawning processes."""

    def __init__(self, results: Mapping[str, CommandResult] | None = None) -> None:
        self.results = dict(results or {})
        self.calls: list[tuple[str, dict[str, str]]] = []

    def run(
        self,
        command: str,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> CommandResult:
        self.calls.append((command, dict(env)))
        return self.results.get(command, CommandResult(0))


@pytest.fixture
def scripted_runner() -> Callable[..., ScriptedRunner]:
    return ScriptedRunner
