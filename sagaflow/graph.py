"""Dependency graph resolution for workflow definitions.

Builds the step DAG from argument declarations, rejects malformed graphs and
groups steps into ready sets that can run concurrently.
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .contracts import WorkflowDefinition
from .errors import DefinitionError

logger = logging.getLogger(__name__)

_VISITING = 1
_VISITED = 2


class ExecutionPlan(BaseModel):
    """Validated DAG plus its layered execution order."""

    model_config = ConfigDict(frozen=True)

    layers: Tuple[Tuple[str, ...], ...] = ()
    dependencies: Dict[str, FrozenSet[str]] = {}

    @property
    def order(self) -> Tuple[str, ...]:
        """Flattened topological order of every step."""
        return tuple(name for layer in self.layers for name in layer)

    def dependents_of(self, name: str) -> FrozenSet[str]:
        return frozenset(
            step for step, deps in self.dependencies.items() if name in deps
        )


def build_dependencies(definition: WorkflowDefinition) -> Dict[str, FrozenSet[str]]:
    """Map each step to the steps it depends on, validating every reference."""
    step_names: List[str] = [step.name for step in definition.steps]
    seen: set[str] = set()
    for name in step_names:
        if name in seen:
            raise DefinitionError(
                f"Duplicate step name '{name}' in workflow '{definition.name}'"
            )
        seen.add(name)

    if len(set(definition.inputs)) != len(definition.inputs):
        raise DefinitionError(f"Duplicate input declared in workflow '{definition.name}'")

    inputs = set(definition.inputs)
    clashing = inputs & seen
    if clashing:
        raise DefinitionError(
            f"Names used as both input and step in workflow '{definition.name}': "
            f"{sorted(clashing)}"
        )

    dependencies: Dict[str, FrozenSet[str]] = {}
    for step in definition.steps:
        for input_name in step.input_names:
            if input_name not in inputs:
                raise DefinitionError(
                    f"Step '{step.name}' references undeclared input '{input_name}'"
                )
        for dep in step.depends_on:
            if dep not in seen:
                raise DefinitionError(
                    f"Step '{step.name}' depends on unknown step '{dep}'"
                )
        dependencies[step.name] = step.depends_on

    if definition.returns is not None and definition.returns not in seen:
        raise DefinitionError(
            f"Workflow '{definition.name}' returns unknown step '{definition.returns}'"
        )
    return dependencies


def find_cycle(
    dependencies: Dict[str, FrozenSet[str]], order: Optional[List[str]] = None
) -> Optional[List[str]]:
    """Return a dependency cycle as a list of step names, or ``None``.

    Depth-first traversal with visiting/visited marks; iterative so long
    chains do not hit the recursion limit.
    """
    marks: Dict[str, int] = {}
    for root in order or list(dependencies):
        if marks.get(root) == _VISITED:
            continue
        path: List[str] = [root]
        stack = [iter(sorted(dependencies.get(root, ())))]
        marks[root] = _VISITING
        while stack:
            node = path[-1]
            child = next(stack[-1], None)
            if child is None:
                marks[node] = _VISITED
                path.pop()
                stack.pop()
                continue
            mark = marks.get(child)
            if mark == _VISITING:
                return path[path.index(child):] + [child]
            if mark is None:
                marks[child] = _VISITING
                path.append(child)
                stack.append(iter(sorted(dependencies.get(child, ()))))
    return None


def resolve(definition: WorkflowDefinition) -> ExecutionPlan:
    """Validate ``definition`` and compute its ready sets.

    Raises:
        DefinitionError: On duplicate names, unknown references or cycles.
    """
    dependencies = build_dependencies(definition)
    declared = [step.name for step in definition.steps]

    cycle = find_cycle(dependencies, declared)
    if cycle is not None:
        raise DefinitionError(
            f"Dependency cycle in workflow '{definition.name}': {' -> '.join(cycle)}"
        )

    levels: Dict[str, int] = {}
    remaining = list(declared)
    while remaining:
        deferred = []
        for name in remaining:
            deps = dependencies[name]
            if all(dep in levels for dep in deps):
                levels[name] = 1 + max((levels[dep] for dep in deps), default=-1)
            else:
                deferred.append(name)
        remaining = deferred

    depth = max(levels.values(), default=-1) + 1
    layers = tuple(
        tuple(name for name in declared if levels[name] == level)
        for level in range(depth)
    )
    logger.debug(f"Resolved workflow '{definition.name}' into {len(layers)} ready sets")
    return ExecutionPlan(layers=layers, dependencies=dependencies)
