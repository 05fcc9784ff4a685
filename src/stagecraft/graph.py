"""The stage dependency graph: declaration, validation and ordering."""

from collections.abc import Iterable, Iterator, Mapping
import heapq
from typing import TYPE_CHECKING

from pyvider.telemetry import logger

from .exceptions import (
    CycleDetectedError,
    DuplicateStageError,
    UnknownBaseError,
    UnknownStageError,
)
from .models import Stage

if TYPE_CHECKING:
    from .executor import StageExecutor
    from .scheduler import BuildResult


def _relation(stage: Stage, dep: str) -> str:
    return "base" if stage.base_is_stage and stage.base == dep else "copy-from"


class BuildGraph:
    """
    Stages keyed by name, in declaration order.

    `add_stage` mirrors a strictly sequential build description: a stage may
    only refer to stages declared before it. Passing `stages` to the
    constructor declares them as one set instead, so references are checked
    against the whole set and cycles surface from `resolve_order`.
    """

    def __init__(self, stages: Iterable[Stage] | None = None) -> None:
        self._stages: dict[str, Stage] = {}
        if stages is None:
            return
        for stage in stages:
            if stage.name in self._stages:
                raise DuplicateStageError(stage.name)
            self._stages[stage.name] = stage
        for stage in self._stages.values():
            for dep in stage.dependencies:
                if dep not in self._stages:
                    raise UnknownBaseError(stage.name, dep, _relation(stage, dep))

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages.values())

    def __getitem__(self, name: str) -> Stage:
        try:
            return self._stages[name]
        except KeyError:
            raise UnknownStageError(name) from None

    @property
    def names(self) -> list[str]:
        return list(self._stages)

    def add_stage(self, stage: Stage) -> None:
        if stage.name in self._stages:
            raise DuplicateStageError(stage.name)
        for dep in stage.dependencies:
            if dep not in self._stages:
                raise UnknownBaseError(stage.name, dep, _relation(stage, dep))
        self._stages[stage.name] = stage
        logger.debug("Stage declared", stage=stage.name, depends_on=list(stage.dependencies))

    def dependencies(self, name: str) -> tuple[str, ...]:
        return self[name].dependencies

    def dependents(self, name: str) -> list[str]:
        self[name]
        return [s.name for s in self._stages.values() if name in s.dependencies]

    def resolve_order(self) -> list[str]:
        """
        Topological order of every stage, ties broken by declaration order.
        """
        position = {name: i for i, name in enumerate(self._stages)}
        remaining = {name: len(stage.dependencies) for name, stage in self._stages.items()}
        dependents: dict[str, list[str]] = {name: [] for name in self._stages}
        for stage in self._stages.values():
            for dep in stage.dependencies:
                dependents[dep].append(stage.name)

        ready = [(position[name], name) for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, name = heapq.heappop(ready)
            order.append(name)
            for child in dependents[name]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, (position[child], child))

        if len(order) != len(self._stages):
            stuck = [name for name in self._stages if remaining[name] > 0]
            raise CycleDetectedError(self._find_cycle(stuck))
        return order

    def _find_cycle(self, candidates: list[str]) -> list[str]:
        """Returns one cycle among `candidates` as [a, b, ..., a]."""
        allowed = set(candidates)
        state: dict[str, int] = {}
        stack: list[str] = []

        def visit(name: str) -> list[str] | None:
            state[name] = 1
            stack.append(name)
            for dep in self._stages[name].dependencies:
                if dep not in allowed:
                    continue
                if state.get(dep) == 1:
                    return stack[stack.index(dep):] + [dep]
                if dep not in state:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            state[name] = 2
            return None

        for name in candidates:
            if name not in state:
                cycle = visit(name)
                if cycle:
                    return cycle
        return candidates

    def closure(self, terminal: str) -> set[str]:
        """The terminal stage plus every stage it transitively depends on."""
        seen: set[str] = set()
        pending = [self[terminal].name]
        while pending:
            name = pending.pop()
            if name in seen:
                continue
            seen.add(name)
            pending.extend(self._stages[name].dependencies)
        return seen

    def unreachable_stages(self, terminal: str) -> list[str]:
        needed = self.closure(terminal)
        return [name for name in self._stages if name not in needed]

    def plan(self, terminal: str) -> list[str]:
        """Resolved order restricted to the terminal stage's dependency closure."""
        needed = self.closure(terminal)
        return [name for name in self.resolve_order() if name in needed]

    def run(
        self,
        terminal: str,
        arg_overrides: Mapping[str, str] | None = None,
        *,
        executor: "StageExecutor",
        workers: int = 1,
    ) -> "BuildResult":
        """Builds the terminal stage and everything it needs; returns a BuildResult."""
        from .scheduler import BuildRun

        build_run = BuildRun(self, executor, arg_overrides or {}, terminal=terminal)
        return build_run.execute(workers=workers)
