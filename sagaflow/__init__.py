"""sagaflow: saga-style workflow orchestration on a durable job queue."""

from .compensation import CompensationCoordinator, CompensationReport
from .config import SagaflowConfig, load_config
from .contracts import FunctionStep, Step, StepDefinition, WorkflowDefinition, input_, result, value
from .dispatch import WorkflowDispatcher
from .errors import (
    ActorDeserializationError,
    CancellationError,
    CompensationError,
    DefinitionError,
    JobNotFoundError,
    PermanentError,
    SagaflowError,
    SnoozeSignal,
    TransientError,
    WorkflowError,
)
from .execute import SubWorkflowStep, WorkflowExecutor, WorkflowResult
from .persistence import Job, JobState, get_job_repository
from .queue import FailOutcome, JobQueue
from .registry import REGISTRY, WorkflowRegistry, register_workflow
from .run import RunContext
from .scheduler import CronScheduler
from .security import SYSTEM_ACTOR, ActorContext, Role, authorize_step
from .worker import Worker
from .workflow import Workflow, WorkflowBuilder, define_workflow

__version__ = "0.1.0"
__all__ = [
    "ActorContext",
    "ActorDeserializationError",
    "CancellationError",
    "CompensationCoordinator",
    "CompensationError",
    "CompensationReport",
    "CronScheduler",
    "DefinitionError",
    "FailOutcome",
    "FunctionStep",
    "Job",
    "JobNotFoundError",
    "JobQueue",
    "JobState",
    "PermanentError",
    "REGISTRY",
    "Role",
    "RunContext",
    "SYSTEM_ACTOR",
    "SagaflowConfig",
    "SagaflowError",
    "SnoozeSignal",
    "Step",
    "StepDefinition",
    "SubWorkflowStep",
    "TransientError",
    "Worker",
    "Workflow",
    "WorkflowBuilder",
    "WorkflowDefinition",
    "WorkflowDispatcher",
    "WorkflowError",
    "WorkflowExecutor",
    "WorkflowRegistry",
    "WorkflowResult",
    "authorize_step",
    "define_workflow",
    "get_job_repository",
    "input_",
    "load_config",
    "register_workflow",
    "result",
    "value",
]
