from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from sagaflow.contracts import FunctionStep, StepDefinition, result
from sagaflow.errors import PermanentError
from sagaflow.run import RunContext, WorkflowRun
from sagaflow.workflow import define_workflow


def test_run_context_is_frozen_and_copies_for_nested_workflows(editor):
    context = RunContext(actor=editor, attempt=2, max_attempts=2, job_id="j1")
    nested = context.for_workflow("inner")

    assert nested.workflow == "inner"
    assert nested.actor is context.actor
    assert nested.job_id == "j1"
    assert nested.is_final_attempt
    with pytest.raises(ValidationError):
        context.attempt = 3


def test_time_remaining(editor):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    context = RunContext(actor=editor, deadline=now + timedelta(seconds=30))
    assert context.time_remaining(now) == 30
    assert RunContext(actor=editor).time_remaining(now) is None


def test_with_deadline_keeps_the_earlier_deadline(editor):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    context = RunContext(actor=editor).with_deadline(now + timedelta(seconds=60))
    assert context.deadline == now + timedelta(seconds=60)
    assert context.with_deadline(now + timedelta(seconds=90)).deadline == context.deadline
    assert context.with_deadline(now + timedelta(seconds=10)).deadline == now + timedelta(seconds=10)


def test_cancel_check_is_not_serialised(editor):
    context = RunContext(actor=editor, should_cancel=lambda: False)
    assert "should_cancel" not in context.model_dump()
    assert "executor" not in context.model_dump()


def test_result_path_to_missing_key_is_permanent():
    step = StepDefinition(
        name="b", step=FunctionStep(lambda a, c: None), arguments={"x": result("a", "missing")}
    )
    run = WorkflowRun.start("wf", ["a", "b"])
    run.mark_complete(
        StepDefinition(name="a", step=FunctionStep(lambda a, c: None)), {"present": 1}, {}
    )
    with pytest.raises(PermanentError):
        run.arguments_for(step, {})


def test_define_workflow_defaults_return_to_last_step():
    first = StepDefinition(name="first", step=FunctionStep(lambda a, c: 1))
    second = StepDefinition(name="second", step=FunctionStep(lambda a, c: 2), wait_for=frozenset({"first"}))
    workflow = define_workflow("pair", inputs=(), steps=[first, second])

    assert workflow.return_step == "second"
    assert workflow.plan.layers == (("first",), ("second",))
    with pytest.raises(KeyError):
        workflow.step("third")
