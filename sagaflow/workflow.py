"""Workflow builder and compiled workflow."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from .contracts import (
    Argument,
    CompensateFn,
    FunctionStep,
    RunFn,
    Step,
    StepDefinition,
    WorkflowDefinition,
)
from .errors import DefinitionError
from .graph import ExecutionPlan, resolve
from .utils.retry import RetryPolicy


class Workflow:
    """A workflow definition whose dependency graph has been validated."""

    def __init__(self, definition: WorkflowDefinition, plan: ExecutionPlan) -> None:
        self.definition = definition
        self.plan = plan

    @classmethod
    def compile(cls, definition: WorkflowDefinition) -> "Workflow":
        """Validate ``definition`` and return the compiled workflow."""
        return cls(definition, resolve(definition))

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def inputs(self) -> Tuple[str, ...]:
        return self.definition.inputs

    @property
    def steps(self) -> Tuple[StepDefinition, ...]:
        return self.definition.steps

    @property
    def return_step(self) -> Optional[str]:
        return self.definition.return_step

    @property
    def timeout(self) -> Optional[float]:
        return self.definition.timeout

    @property
    def backoff(self) -> Optional[RetryPolicy]:
        return self.definition.backoff

    def step(self, name: str) -> StepDefinition:
        found = self.definition.get_step(name)
        if found is None:
            raise KeyError(name)
        return found

    def __repr__(self) -> str:
        return f"Workflow(name={self.name!r}, layers={list(self.plan.layers)!r})"


class WorkflowBuilder:
    """Collects inputs and steps, then compiles them into a :class:`Workflow`.

    Example::

        builder = WorkflowBuilder("create_project")
        builder.input("name")
        builder.step("create", create_project, arguments={"name": input_("name")},
                     compensate=delete_project)
        builder.step("notify", notify, arguments={"project": result("create")})
        workflow = builder.build()
    """

    def __init__(
        self,
        name: str,
        *,
        timeout: Optional[float] = None,
        backoff: Optional[RetryPolicy] = None,
    ) -> None:
        self._name = name
        self._timeout = timeout
        self._backoff = backoff
        self._inputs: List[str] = []
        self._steps: List[StepDefinition] = []
        self._returns: Optional[str] = None

    def input(self, *names: str) -> "WorkflowBuilder":
        """Declare one or more workflow inputs."""
        self._inputs.extend(names)
        return self

    def step(
        self,
        name: str,
        run: Union[Step, RunFn],
        *,
        arguments: Optional[Dict[str, Argument]] = None,
        compensate: Optional[CompensateFn] = None,
        wait_for: Iterable[str] = (),
        max_retries: int = 0,
        timeout: Optional[float] = None,
        idempotent: bool = True,
    ) -> StepDefinition:
        """Add a step and return its definition."""
        if isinstance(run, Step):
            if compensate is not None:
                raise DefinitionError(
                    f"Step '{name}' is a Step instance; define compensate() on it instead"
                )
            step = run
        elif callable(run):
            step = FunctionStep(run, compensate)
        else:
            raise DefinitionError(f"Step '{name}' must be a Step or a callable")

        try:
            definition = StepDefinition(
                name=name,
                step=step,
                arguments=arguments or {},
                wait_for=frozenset(wait_for),
                max_retries=max_retries,
                timeout=timeout,
                idempotent=idempotent,
            )
        except ValidationError as exc:
            raise DefinitionError(f"Invalid step '{name}': {exc}") from exc
        self._steps.append(definition)
        return definition

    def returns(self, step_name: str) -> "WorkflowBuilder":
        """Use the result of ``step_name`` as the workflow's final value."""
        self._returns = step_name
        return self

    def definition(self) -> WorkflowDefinition:
        try:
            return WorkflowDefinition(
                name=self._name,
                inputs=tuple(self._inputs),
                steps=tuple(self._steps),
                returns=self._returns,
                timeout=self._timeout,
                backoff=self._backoff,
            )
        except ValidationError as exc:
            raise DefinitionError(f"Invalid workflow '{self._name}': {exc}") from exc

    def build(self) -> Workflow:
        """Validate the collected steps and return the compiled workflow.

        Raises:
            DefinitionError: If the dependency graph is malformed.
        """
        return Workflow.compile(self.definition())


def define_workflow(
    name: str,
    inputs: Iterable[str],
    steps: Iterable[StepDefinition],
    returns: Optional[str] = None,
    timeout: Optional[float] = None,
    backoff: Optional[RetryPolicy] = None,
) -> Workflow:
    """Compile a workflow from already-built step definitions."""
    definition = WorkflowDefinition(
        name=name,
        inputs=tuple(inputs),
        steps=tuple(steps),
        returns=returns,
        timeout=timeout,
        backoff=backoff,
    )
    return Workflow.compile(definition)
