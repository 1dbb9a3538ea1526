"""Core workflow contracts: steps, argument sources and definitions."""

from __future__ import annotations

import abc
import inspect
from typing import (
    TYPE_CHECKING,
    Annotated,
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Literal,
    Optional,
    Tuple,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field

from .utils.retry import RetryPolicy

if TYPE_CHECKING:
    from .run import RunContext


class Step(abc.ABC):
    """A unit of work with a forward action and an optional compensation.

    Every input arrives as an explicit parameter: ``arguments`` holds the
    resolved argument bag and ``context`` the :class:`~sagaflow.run.RunContext`
    (actor, attempt, deadline). Steps raise
    :class:`~sagaflow.errors.PermanentError`,
    :class:`~sagaflow.errors.TransientError` or
    :class:`~sagaflow.errors.SnoozeSignal` to signal failure.
    """

    @abc.abstractmethod
    async def run(self, arguments: Dict[str, Any], context: "RunContext") -> Any:
        """Perform the step and return its result."""
        raise NotImplementedError

    async def compensate(
        self, result: Any, arguments: Dict[str, Any], context: "RunContext"
    ) -> None:
        """Undo the effect of a successful :meth:`run`.

        Must be idempotent. The default is a no-op, which suits pure reads.
        """
        return None


RunFn = Callable[[Dict[str, Any], "RunContext"], Union[Any, Awaitable[Any]]]
CompensateFn = Callable[[Any, Dict[str, Any], "RunContext"], Union[None, Awaitable[None]]]


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    value = fn(*args)
    if inspect.isawaitable(value):
        value = await value
    return value


class FunctionStep(Step):
    """Adapts plain (sync or async) functions to the :class:`Step` interface."""

    def __init__(self, run: RunFn, compensate: Optional[CompensateFn] = None) -> None:
        self._run = run
        self._compensate = compensate

    async def run(self, arguments: Dict[str, Any], context: "RunContext") -> Any:
        return await _call(self._run, arguments, context)

    async def compensate(
        self, result: Any, arguments: Dict[str, Any], context: "RunContext"
    ) -> None:
        if self._compensate is not None:
            await _call(self._compensate, result, arguments, context)

    def __repr__(self) -> str:
        name = getattr(self._run, "__name__", repr(self._run))
        return f"FunctionStep({name})"


class InputRef(BaseModel):
    """Argument taken from a named workflow input."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["input"] = "input"
    name: str


class ResultRef(BaseModel):
    """Argument taken from another step's result, optionally a nested key."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["result"] = "result"
    step: str
    path: Tuple[str, ...] = ()


class ValueRef(BaseModel):
    """Constant argument."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["value"] = "value"
    value: Any = None


Argument = Annotated[Union[InputRef, ResultRef, ValueRef], Field(discriminator="kind")]


def input_(name: str) -> InputRef:
    """Reference the workflow input ``name``."""
    return InputRef(name=name)


def result(step: str, *path: str) -> ResultRef:
    """Reference the result of ``step``; ``path`` digs into mappings/attributes."""
    return ResultRef(step=step, path=tuple(path))


def value(constant: Any) -> ValueRef:
    """Pass ``constant`` as-is."""
    return ValueRef(value=constant)


class StepDefinition(BaseModel):
    """Immutable declaration of one step inside a workflow."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1)
    step: Step
    arguments: Dict[str, Argument] = Field(default_factory=dict)
    wait_for: FrozenSet[str] = frozenset()
    max_retries: int = Field(default=0, ge=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    idempotent: bool = True

    @property
    def depends_on(self) -> FrozenSet[str]:
        """Names of the steps that must complete before this one starts."""
        refs = {arg.step for arg in self.arguments.values() if isinstance(arg, ResultRef)}
        return frozenset(refs) | self.wait_for

    @property
    def input_names(self) -> FrozenSet[str]:
        return frozenset(
            arg.name for arg in self.arguments.values() if isinstance(arg, InputRef)
        )


class WorkflowDefinition(BaseModel):
    """Ordered steps plus the declared inputs of a workflow.

    ``timeout`` bounds a whole run in seconds and ``backoff`` replaces the
    queue's retry backoff for jobs of this workflow.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1)
    inputs: Tuple[str, ...] = ()
    steps: Tuple[StepDefinition, ...] = ()
    returns: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    backoff: Optional[RetryPolicy] = None

    def get_step(self, name: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def return_step(self) -> Optional[str]:
        """Step whose result is the workflow's final value."""
        if self.returns is not None:
            return self.returns
        return self.steps[-1].name if self.steps else None
