"""Executes a graph's stages, running independent stages on a bounded worker pool."""

from collections.abc import Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
import threading
from typing import TYPE_CHECKING

from attrs import define, field
from pyvider.telemetry import logger

from .exceptions import BuildError, StageExecutionError
from .executor import StageExecutor, StageOutcome, resolve_args
from .store import ArtifactStore

if TYPE_CHECKING:
    from .graph import BuildGraph


@define(slots=True)
class BuildResult:
    terminal: str
    plan: list[str]
    executed: list[str]
    store: ArtifactStore
    outcome: StageOutcome
    unreachable: list[str] = field(factory=list)


class BuildRun:
    """
    State of one invocation: resolved args, finished stages, first failure.

    `require` is the only way a stage gets built. It is memoized, so a stage
    requested by the scheduler and by a downstream copy runs exactly once.
    """

    def __init__(
        self,
        graph: "BuildGraph",
        executor: StageExecutor,
        overrides: Mapping[str, str],
        *,
        terminal: str,
    ) -> None:
        self.graph = graph
        self.executor = executor
        self.terminal = graph[terminal].name
        self.overrides = dict(overrides)
        self.plan = graph.plan(terminal)
        self.unreachable = graph.unreachable_stages(terminal)

        self._outcomes: dict[str, StageOutcome] = {}
        self._failures: dict[str, BaseException] = {}
        self._in_flight: dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self.executed: list[str] = []

        self._inherited, self._args = self._resolve_all_args()

    def _resolve_all_args(self) -> tuple[dict[str, dict[str, str]], dict[str, dict[str, str]]]:
        # Resolved up front so a missing value fails before anything executes.
        visible: dict[str, dict[str, str]] = {}
        inherited_by_stage: dict[str, dict[str, str]] = {}
        resolved_by_stage: dict[str, dict[str, str]] = {}
        declared: set[str] = set()
        for name in self.plan:
            stage = self.graph[name]
            inherited = visible.get(stage.base, {}) if stage.base_is_stage else {}
            resolved = resolve_args(stage, self.overrides, inherited)
            inherited_by_stage[name] = inherited
            resolved_by_stage[name] = resolved
            visible[name] = {**inherited, **resolved}
            declared.update(arg.name for arg in stage.args)

        unused = sorted(set(self.overrides) - declared)
        if unused:
            logger.warning(f"Build arguments not declared by any stage: {', '.join(unused)}")
        return inherited_by_stage, resolved_by_stage

    def require(self, name: str) -> StageOutcome:
        """Returns the outcome of `name`, building it now if nobody has yet."""
        with self._lock:
            if name in self._outcomes:
                return self._outcomes[name]
            if name in self._failures:
                raise StageExecutionError(
                    f"Upstream stage '{name}' failed.", stage_id=name
                ) from self._failures[name]
            event = self._in_flight.get(name)
            owner = event is None
            if owner:
                event = threading.Event()
                self._in_flight[name] = event

        if not owner:
            event.wait()
            return self.require(name)

        try:
            outcome = self._build(name)
        except BaseException as e:
            with self._lock:
                self._failures[name] = e
                del self._in_flight[name]
            event.set()
            raise
        with self._lock:
            self._outcomes[name] = outcome
            self.executed.append(name)
            del self._in_flight[name]
        event.set()
        return outcome

    def _build(self, name: str) -> StageOutcome:
        if name not in self._args:
            raise StageExecutionError(
                f"Stage '{name}' is not part of the plan for '{self.terminal}'.", stage_id=name
            )
        stage = self.graph[name]
        try:
            return self.executor.execute(
                stage, self._args[name], self, inherited_args=self._inherited[name]
            )
        except BuildError as e:
            if e.stage_id is None:
                e.stage_id = name
            raise
        except Exception as e:
            raise StageExecutionError(f"Unexpected failure: {e}", stage_id=name) from e

    def execute(self, workers: int = 1) -> BuildResult:
        if self.unreachable:
            logger.warning(
                f"Stages not needed for '{self.terminal}' will not be built: "
                f"{', '.join(self.unreachable)}"
            )
        logger.info(f"Build plan for '{self.terminal}': {' -> '.join(self.plan)}")

        if workers <= 1:
            for name in self.plan:
                try:
                    self.require(name)
                except BuildError as e:
                    logger.error(f"Stage '{name}' failed, aborting build: {e}")
                    raise
        else:
            self._execute_parallel(workers)

        return BuildResult(
            terminal=self.terminal,
            plan=list(self.plan),
            executed=list(self.executed),
            store=self.executor.store,
            outcome=self._outcomes[self.terminal],
            unreachable=list(self.unreachable),
        )

    def _execute_parallel(self, workers: int) -> None:
        pending = {
            name: set(self.graph.dependencies(name)) for name in self.plan
        }
        completed: set[str] = set()
        first_failure: BaseException | None = None

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stage") as pool:
            running: dict[Future, str] = {}
            while True:
                if first_failure is None:
                    for name in self.plan:
                        if name in pending and pending[name] <= completed:
                            del pending[name]
                            running[pool.submit(self.require, name)] = name
                if not running:
                    break
                finished, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in finished:
                    name = running.pop(future)
                    error = future.exception()
                    if error is None:
                        completed.add(name)
                    elif first_failure is None:
                        first_failure = error
                        logger.error(f"Stage '{name}' failed, draining running stages: {error}")

        if first_failure is not None:
            raise first_failure
