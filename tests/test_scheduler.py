"""Tests for running a graph: ordering, parallelism, pruning and failure handling."""

import threading

import pytest

from stagecraft.exceptions import StageCommandError, UnresolvedBuildArgError
from stagecraft.executor import BaseImageProvider, CommandResult, StageExecutor
from stagecraft.graph import BuildGraph
from stagecraft.models import BuildArg, CopyOperation, Stage
from stagecraft.view import FilesystemView


@pytest.mark.parametrize("workers", [1, 4])
def test_toolchain_scenario(toolchain_stages, executor: StageExecutor, workers: int) -> None:
    result = BuildGraph(toolchain_stages).run("pack", executor=executor, workers=workers)

    assert result.plan == ["base", "c-tools", "rust-tools", "pack"]
    assert result.executed[0] == "base"
    assert result.executed[-1] == "pack"
    assert set(result.executed[1:3]) == {"c-tools", "rust-tools"}
    assert result.unreachable == ["docs"]
    assert not executor.store.has("docs")

    staging = {rel for rel, _ in result.store.get("pack", "staging").entries}
    assert {"usr/bin/c-tool", "usr/bin/rust-tool", "DEBIAN/control"} <= staging


def test_independent_stages_run_concurrently(store, fetcher, context_dir) -> None:
    barrier = threading.Barrier(2, timeout=5)

    class BarrierRunner:
        def run(self, command, cwd, env, timeout=None):
            if command == "wait":
                barrier.wait()
            return CommandResult(0)

    toolchain = FilesystemView()
    toolchain.add_file("out/tool", b"elf")
    executor = StageExecutor(
        store,
        fetcher,
        context_dir=context_dir,
        runner=BarrierRunner(),
        images=BaseImageProvider({"toolchain": toolchain}),
    )
    graph = BuildGraph(
        [
            Stage(name="c-tools", base="image:toolchain", commands=["wait"], outputs=["out"]),
            Stage(name="rust-tools", base="image:toolchain", commands=["wait"], outputs=["out"]),
            Stage(
                name="pack",
                copies=[
                    CopyOperation("c-tools", "out", "/c"),
                    CopyOperation("rust-tools", "out", "/r"),
                ],
                outputs=["c", "r"],
            ),
        ]
    )

    # Both stages block on the barrier, so this only finishes if they overlap.
    result = graph.run("pack", executor=executor, workers=2)
    assert result.executed[-1] == "pack"
    assert sorted(result.outcome.artifacts) == ["c", "r"]


def test_failure_keeps_completed_artifacts_and_starts_nothing_new(executor: StageExecutor) -> None:
    graph = BuildGraph()
    graph.add_stage(Stage(name="headers", commands=["mkdir inc", "echo h > inc/a.h"], outputs=["inc"]))
    graph.add_stage(Stage(name="broken", commands=["true", "exit 3"]))
    graph.add_stage(
        Stage(
            name="pack",
            copies=[
                CopyOperation("headers", "inc", "/inc"),
                CopyOperation("broken", "out", "/out"),
            ],
        )
    )

    with pytest.raises(StageCommandError) as excinfo:
        graph.run("pack", executor=executor)

    assert excinfo.value.stage_id == "broken"
    assert excinfo.value.command_index == 1
    assert excinfo.value.exit_status == 3
    assert executor.store.get("headers", "inc").entries[-1][1].data == b"h\n"
    assert not executor.store.has("broken")
    assert not executor.store.has("pack")


def test_parallel_failure_drains_and_reports_first_cause(executor: StageExecutor) -> None:
    graph = BuildGraph(
        [
            Stage(name="slow", commands=["sleep 0.2", "echo done > ok"], outputs=["ok"]),
            Stage(name="broken", commands=["exit 9"]),
            Stage(name="after-broken", base="broken", commands=["echo never"]),
            Stage(name="pack", base="slow", copies=[CopyOperation("after-broken", "/", "/x")]),
        ]
    )
    with pytest.raises(StageCommandError) as excinfo:
        graph.run("pack", executor=executor, workers=4)

    assert excinfo.value.stage_id == "broken"
    assert executor.store.has("slow")
    assert not executor.store.has("after-broken")
    assert not executor.store.has("pack")


def test_unresolved_arg_fails_before_anything_runs(executor: StageExecutor) -> None:
    graph = BuildGraph(
        [
            Stage(name="first", commands=["echo ran > f"], outputs=["f"]),
            Stage(name="second", base="first", args=[BuildArg("LINUX_VERSION")]),
        ]
    )
    with pytest.raises(UnresolvedBuildArgError):
        graph.run("second", executor=executor)
    assert not executor.store.has("first")

    result = graph.run("second", {"LINUX_VERSION": "6.5.13"}, executor=executor)
    assert result.executed == ["first", "second"]


def test_lazy_require_builds_upstream_once(store, fetcher, context_dir, scripted_runner) -> None:
    from stagecraft.scheduler import BuildRun

    runner = scripted_runner()
    executor = StageExecutor(store, fetcher, context_dir=context_dir, runner=runner)
    graph = BuildGraph(
        [
            Stage(name="base", commands=["build-base"]),
            Stage(name="tool", base="base", commands=["build-tool"]),
        ]
    )
    build_run = BuildRun(graph, executor, {}, terminal="tool")

    build_run.require("tool")
    build_run.require("base")
    assert [call[0] for call in runner.calls] == ["build-base", "build-tool"]
    assert build_run.executed == ["base", "tool"]
