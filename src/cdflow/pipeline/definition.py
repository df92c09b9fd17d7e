"""Pipeline definitions and dependency-graph validation.

A definition is a named, versioned set of stage specs. Dependencies are held
as stage names; ``validate`` turns them into an adjacency list plus a
topological order and rejects cycles and dangling names.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from cdflow.common.constants import DEFAULT_STAGE_TIMEOUT_SECONDS, PipelineRole, StageKind
from cdflow.common.errors import DefinitionInvalidError

if TYPE_CHECKING:
    from cdflow.pipeline.actions import Action


# --- Data Classes ---


@dataclass(frozen=True)
class StageSpec:
    """Immutable description of one stage."""

    name: str
    action: Action
    kind: StageKind = StageKind.BUILD
    depends_on: tuple[str, ...] = ()
    timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS
    retries: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Stage name must be non-empty")
        if self.timeout_seconds <= 0:
            raise ValueError(f"Stage '{self.name}': timeout must be positive")
        if self.retries < 0:
            raise ValueError(f"Stage '{self.name}': retries must be >= 0")
        # Accept any iterable of names, store as a tuple
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        object.__setattr__(self, "kind", StageKind(self.kind))


@dataclass(frozen=True)
class DependencyGraph:
    """Adjacency lists keyed by stage name plus a topological order."""

    order: tuple[str, ...]
    upstream: dict[str, tuple[str, ...]]
    downstream: dict[str, tuple[str, ...]]

    def descendants(self, name: str) -> set[str]:
        """All stages that transitively depend on ``name``."""
        seen: set[str] = set()
        queue = deque(self.downstream.get(name, ()))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.downstream.get(current, ()))
        return seen


@dataclass(frozen=True)
class PipelineDefinition:
    """Named, versioned graph of stages."""

    name: str
    stages: tuple[StageSpec, ...]
    version: str = "1"
    role: PipelineRole = PipelineRole.STANDALONE
    description: str = ""
    _index: dict[str, StageSpec] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "role", PipelineRole(self.role))
        object.__setattr__(self, "_index", {s.name: s for s in self.stages})

    @classmethod
    def chain(
        cls,
        name: str,
        stages: Sequence[StageSpec],
        version: str = "1",
        role: PipelineRole = PipelineRole.STANDALONE,
        description: str = "",
    ) -> PipelineDefinition:
        """Build a linear pipeline where each stage depends on the previous one."""
        linked: list[StageSpec] = []
        for i, spec in enumerate(stages):
            deps = (stages[i - 1].name,) if i > 0 else ()
            linked.append(replace(spec, depends_on=deps))
        return cls(name=name, stages=tuple(linked), version=version, role=role,
                   description=description)

    def stage(self, name: str) -> StageSpec:
        return self._index[name]

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    def stages_of_kind(self, kind: StageKind) -> list[StageSpec]:
        return [s for s in self.stages if s.kind == kind]

    def validate(self) -> DependencyGraph:
        """Check the graph and return it; raise DefinitionInvalidError otherwise."""
        problems: list[str] = []
        if not self.stages:
            problems.append("pipeline has no stages")

        seen: set[str] = set()
        for spec in self.stages:
            if spec.name in seen:
                problems.append(f"duplicate stage name '{spec.name}'")
            seen.add(spec.name)

        for spec in self.stages:
            for dep in spec.depends_on:
                if dep not in self._index:
                    problems.append(f"stage '{spec.name}' depends on unknown stage '{dep}'")
                elif dep == spec.name:
                    problems.append(f"stage '{spec.name}' depends on itself")

        if problems:
            raise DefinitionInvalidError(self.name, problems)

        upstream = {s.name: tuple(dict.fromkeys(s.depends_on)) for s in self.stages}
        downstream: dict[str, list[str]] = {s.name: [] for s in self.stages}
        for name, deps in upstream.items():
            for dep in deps:
                downstream[dep].append(name)

        order = _topological_order(self.stage_names, upstream, downstream)
        if len(order) != len(self.stages):
            cyclic = sorted(set(self.stage_names) - set(order))
            raise DefinitionInvalidError(
                self.name, [f"dependency cycle among stages {cyclic}"],
            )

        return DependencyGraph(
            order=tuple(order),
            upstream=upstream,
            downstream={k: tuple(v) for k, v in downstream.items()},
        )


# --- Helpers ---


def _topological_order(
    names: Iterable[str],
    upstream: dict[str, tuple[str, ...]],
    downstream: dict[str, list[str]],
) -> list[str]:
    """Kahn's algorithm, stable with respect to declaration order."""
    names = list(names)
    position = {name: i for i, name in enumerate(names)}
    remaining = {name: len(upstream[name]) for name in names}
    ready = deque(name for name in names if remaining[name] == 0)
    order: list[str] = []
    while ready:
        current = ready.popleft()
        order.append(current)
        released = []
        for child in downstream[current]:
            remaining[child] -= 1
            if remaining[child] == 0:
                released.append(child)
        ready.extend(sorted(released, key=position.__getitem__))
    return order


__all__ = ["StageSpec", "DependencyGraph", "PipelineDefinition"]
