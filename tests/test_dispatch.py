import pytest

from sagaflow.contracts import input_
from sagaflow.dispatch import WorkflowDispatcher, build_job_args
from sagaflow.registry import WorkflowRegistry
from sagaflow.security import ActorContext
from sagaflow.workflow import WorkflowBuilder


def greeting_workflow():
    builder = WorkflowBuilder("greet").input("name")
    builder.step("hello", lambda arguments, ctx: f"hello {arguments['name']}", arguments={"name": input_("name")})
    return builder.build()


@pytest.mark.asyncio
async def test_dispatch_serialises_workflow_inputs_and_actor(job_queue, editor):
    registry = WorkflowRegistry()
    dispatcher = WorkflowDispatcher(job_queue, registry)

    job = await dispatcher.dispatch(greeting_workflow(), {"name": "ada"}, editor, queue="mail")

    assert job.queue == "mail"
    assert job.args == {
        "workflow": "greet",
        "inputs": {"name": "ada"},
        "actor": {"id": "user-1", "tenant_id": "acme", "role": "editor"},
    }
    assert "greet" in registry


@pytest.mark.asyncio
async def test_dispatch_forwards_enqueue_options(job_queue, editor):
    registry = WorkflowRegistry()
    registry.register(greeting_workflow())
    dispatcher = WorkflowDispatcher(job_queue, registry)

    first = await dispatcher.dispatch("greet", {"name": "ada"}, editor, unique_key="greet:ada", priority=2)
    second = await dispatcher.dispatch("greet", {"name": "ada"}, editor, unique_key="greet:ada")
    assert first.priority == 2
    assert second.id == first.id


@pytest.mark.asyncio
async def test_dispatch_rejects_unknown_workflow_and_missing_inputs(job_queue, editor):
    registry = WorkflowRegistry()
    dispatcher = WorkflowDispatcher(job_queue, registry)

    with pytest.raises(KeyError):
        await dispatcher.dispatch("ghost", {}, editor)
    with pytest.raises(ValueError):
        await dispatcher.dispatch(greeting_workflow(), {}, editor)
    assert await job_queue.list_jobs() == []


@pytest.mark.asyncio
async def test_run_executes_synchronously(editor):
    dispatcher = WorkflowDispatcher(registry=WorkflowRegistry())
    outcome = await dispatcher.run(greeting_workflow(), {"name": "ada"}, editor)
    assert outcome.ok
    assert outcome.value == "hello ada"


def test_registry_rejects_conflicting_names():
    registry = WorkflowRegistry()
    workflow = greeting_workflow()
    registry.register(workflow)
    registry.register(workflow)
    with pytest.raises(ValueError):
        registry.register(greeting_workflow())
    assert registry.names() == ["greet"]


def test_build_job_args_round_trips_actor(editor):
    args = build_job_args("greet", {"name": "ada"}, editor)
    assert ActorContext.from_job_args(args["actor"]) == editor
