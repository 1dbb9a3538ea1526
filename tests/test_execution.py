import asyncio

import pytest

from sagaflow.contracts import Step, input_, result, value
from sagaflow.errors import (
    CancellationError,
    CompensationError,
    PermanentError,
    SnoozeSignal,
    TransientError,
)
from sagaflow.execute import SubWorkflowStep, WorkflowExecutor
from sagaflow.run import RunContext
from sagaflow.security import Decision, authorize_step
from sagaflow.utils.retry import RetryPolicy
from sagaflow.workflow import WorkflowBuilder


class Recorder:
    def __init__(self):
        self.trace = []

    def step(self, name, fail_with=None, output=None):
        async def run(arguments, context):
            self.trace.append(f"run:{name}")
            if fail_with is not None:
                raise fail_with
            return output if output is not None else f"{name}-result"

        return run

    def undo(self, name):
        async def compensate(result, arguments, context):
            self.trace.append(f"undo:{name}")

        return compensate


def chain(recorder, fail_at=None, error=None):
    builder = WorkflowBuilder("chain")
    previous = None
    for name in ("a", "b", "c"):
        arguments = {"prev": result(previous)} if previous else {}
        builder.step(
            name,
            recorder.step(name, fail_with=error if name == fail_at else None),
            arguments=arguments,
            compensate=recorder.undo(name),
        )
        previous = name
    return builder.build()


@pytest.mark.asyncio
async def test_linear_workflow_success(context):
    recorder = Recorder()
    outcome = await WorkflowExecutor().execute(chain(recorder), {}, context)

    assert outcome.ok
    assert outcome.value == "c-result"
    assert outcome.completed == ["a", "b", "c"]
    assert outcome.compensated == []
    assert recorder.trace == ["run:a", "run:b", "run:c"]


@pytest.mark.asyncio
async def test_failure_compensates_completed_steps_in_reverse(context):
    recorder = Recorder()
    workflow = chain(recorder, fail_at="c", error=PermanentError("boom"))
    outcome = await WorkflowExecutor().execute(workflow, {}, context)

    assert not outcome.ok
    assert isinstance(outcome.error, PermanentError)
    assert outcome.error.step == "c"
    assert recorder.trace == ["run:a", "run:b", "run:c", "undo:b", "undo:a"]
    assert outcome.compensated == ["b", "a"]


@pytest.mark.asyncio
async def test_first_step_failure_compensates_nothing(context):
    recorder = Recorder()
    workflow = chain(recorder, fail_at="a", error=TransientError("down"))
    outcome = await WorkflowExecutor().execute(workflow, {}, context)

    assert not outcome.ok
    assert isinstance(outcome.error, TransientError)
    assert recorder.trace == ["run:a"]
    assert outcome.compensated == []


@pytest.mark.asyncio
async def test_independent_steps_run_concurrently(context):
    b_started = asyncio.Event()
    c_started = asyncio.Event()

    async def b(arguments, ctx):
        b_started.set()
        await asyncio.wait_for(c_started.wait(), 1)
        return "b"

    async def c(arguments, ctx):
        c_started.set()
        await asyncio.wait_for(b_started.wait(), 1)
        return "c"

    async def d(arguments, ctx):
        return arguments["b"] + arguments["c"]

    builder = WorkflowBuilder("fan")
    builder.step("a", lambda arguments, ctx: "a")
    builder.step("b", b, wait_for=["a"])
    builder.step("c", c, wait_for=["a"])
    builder.step("d", d, arguments={"b": result("b"), "c": result("c")})
    outcome = await WorkflowExecutor(max_concurrency=4).execute(builder.build(), {}, context)

    assert outcome.ok
    assert outcome.value == "bc"


@pytest.mark.asyncio
async def test_max_concurrency_bounds_parallel_steps(context):
    running = 0
    peak = 0

    async def work(arguments, ctx):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    builder = WorkflowBuilder("bounded")
    for i in range(6):
        builder.step(f"s{i}", work)
    outcome = await WorkflowExecutor(max_concurrency=2).execute(builder.build(), {}, context)

    assert outcome.ok
    assert peak == 2


@pytest.mark.asyncio
async def test_in_flight_sibling_is_compensated_after_failure(context):
    trace = []

    async def slow(arguments, ctx):
        await asyncio.sleep(0.01)
        trace.append("run:slow")
        return "slow"

    async def fail(arguments, ctx):
        raise PermanentError("nope")

    async def never(arguments, ctx):
        trace.append("run:never")

    async def undo_slow(result, arguments, ctx):
        trace.append("undo:slow")

    builder = WorkflowBuilder("siblings")
    builder.step("slow", slow, compensate=undo_slow)
    builder.step("fail", fail)
    builder.step("after", never, wait_for=["slow", "fail"])
    outcome = await WorkflowExecutor().execute(builder.build(), {}, context)

    assert not outcome.ok
    assert trace == ["run:slow", "undo:slow"]
    assert outcome.compensated == ["slow"]


@pytest.mark.asyncio
async def test_arguments_resolve_inputs_results_and_values(context):
    seen = {}

    async def create(arguments, ctx):
        return {"project": {"id": 7, "name": arguments["name"]}}

    async def notify(arguments, ctx):
        seen.update(arguments)
        return "sent"

    builder = WorkflowBuilder("args").input("name")
    builder.step("create", create, arguments={"name": input_("name")})
    builder.step(
        "notify",
        notify,
        arguments={"id": result("create", "project", "id"), "channel": value("email")},
    )
    builder.returns("create")
    outcome = await WorkflowExecutor().execute(builder.build(), {"name": "apollo"}, context)

    assert outcome.ok
    assert seen == {"id": 7, "channel": "email"}
    assert outcome.value == {"project": {"id": 7, "name": "apollo"}}
    assert outcome.results["notify"] == "sent"


@pytest.mark.asyncio
async def test_missing_input_is_permanent_failure(context):
    builder = WorkflowBuilder("needs-input").input("name")
    builder.step("a", lambda arguments, ctx: None, arguments={"name": input_("name")})
    outcome = await WorkflowExecutor().execute(builder.build(), {}, context)

    assert not outcome.ok
    assert isinstance(outcome.error, PermanentError)
    assert "name" in str(outcome.error)


@pytest.mark.asyncio
async def test_step_retries_transient_errors_with_backoff(context, sleeps):
    attempts = []

    async def flaky(arguments, ctx):
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientError("flaky")
        return "ok"

    builder = WorkflowBuilder("retrying")
    builder.step("flaky", flaky, max_retries=3)
    executor = WorkflowExecutor(
        retry_policy=RetryPolicy(base=0.5, cap=30.0, jitter=0.0), sleep=sleeps
    )
    outcome = await executor.execute(builder.build(), {}, context)

    assert outcome.ok
    assert len(attempts) == 3
    assert sleeps.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_step_retries_do_not_apply_to_permanent_errors(context, sleeps):
    attempts = []

    async def denied(arguments, ctx):
        attempts.append(1)
        raise PermanentError("forbidden")

    builder = WorkflowBuilder("no-retry")
    builder.step("denied", denied, max_retries=5)
    outcome = await WorkflowExecutor(sleep=sleeps).execute(builder.build(), {}, context)

    assert not outcome.ok
    assert len(attempts) == 1
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_timeout_is_transient_for_idempotent_steps(context):
    async def hang(arguments, ctx):
        await asyncio.sleep(1)

    builder = WorkflowBuilder("timeouts")
    builder.step("hang", hang, timeout=0.01)
    outcome = await WorkflowExecutor().execute(builder.build(), {}, context)
    assert isinstance(outcome.error, TransientError)
    assert outcome.error.step == "hang"

    builder = WorkflowBuilder("timeouts-strict")
    builder.step("hang", hang, timeout=0.01, idempotent=False)
    outcome = await WorkflowExecutor().execute(builder.build(), {}, context)
    assert isinstance(outcome.error, PermanentError)


@pytest.mark.asyncio
async def test_unexpected_exception_is_wrapped_as_transient(context):
    async def crash(arguments, ctx):
        raise RuntimeError("kaboom")

    builder = WorkflowBuilder("crash")
    builder.step("crash", crash)
    outcome = await WorkflowExecutor().execute(builder.build(), {}, context)

    assert isinstance(outcome.error, TransientError)
    assert "kaboom" in str(outcome.error)
    assert isinstance(outcome.error.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_snooze_propagates_with_seconds(context):
    async def later(arguments, ctx):
        raise SnoozeSignal(45)

    builder = WorkflowBuilder("snoozy")
    builder.step("later", later)
    outcome = await WorkflowExecutor().execute(builder.build(), {}, context)
    assert isinstance(outcome.error, SnoozeSignal)
    assert outcome.error.seconds == 45


@pytest.mark.asyncio
async def test_compensation_failure_is_surfaced(context):
    async def undo_broken(result, arguments, ctx):
        raise RuntimeError("cannot undo")

    async def fail(arguments, ctx):
        raise PermanentError("boom")

    builder = WorkflowBuilder("broken-undo")
    builder.step("a", lambda arguments, ctx: "a", compensate=undo_broken)
    builder.step("b", fail, wait_for=["a"])
    outcome = await WorkflowExecutor().execute(builder.build(), {}, context)

    assert isinstance(outcome.error, CompensationError)
    assert isinstance(outcome.error.original, PermanentError)
    assert [name for name, _ in outcome.error.failures] == ["a"]


@pytest.mark.asyncio
async def test_cancellation_between_ready_sets(context):
    recorder = Recorder()
    flags = {"cancel": False}

    async def a(arguments, ctx):
        recorder.trace.append("run:a")
        flags["cancel"] = True
        return "a"

    builder = WorkflowBuilder("cancellable")
    builder.step("a", a, compensate=recorder.undo("a"))
    builder.step("b", recorder.step("b"), wait_for=["a"])
    outcome = await WorkflowExecutor().execute(
        builder.build(), {}, context, should_cancel=lambda: flags["cancel"]
    )

    assert isinstance(outcome.error, CancellationError)
    assert recorder.trace == ["run:a", "undo:a"]


class ProjectAuthorizer:
    def authorize(self, actor, resource, action):
        return Decision.ALLOW if actor.role.value in ("admin", "editor") else Decision.DENY


@pytest.mark.asyncio
async def test_viewer_denied_is_permanent_and_rolls_back(viewer):
    trace = []
    authorizer = ProjectAuthorizer()

    async def load(arguments, ctx):
        trace.append("run:load")
        return {"tenant_id": ctx.actor.tenant_id}

    async def undo_load(result, arguments, ctx):
        trace.append("undo:load")

    async def update(arguments, ctx):
        await authorize_step(authorizer, ctx, arguments["project"], "update")
        trace.append("run:update")

    builder = WorkflowBuilder("update-project")
    builder.step("load", load, compensate=undo_load)
    builder.step("update", update, arguments={"project": result("load")}, max_retries=3)
    outcome = await WorkflowExecutor().execute(builder.build(), {}, RunContext(actor=viewer))

    assert isinstance(outcome.error, PermanentError)
    assert outcome.error.reason == "forbidden"
    assert trace == ["run:load", "undo:load"]


class Counter(Step):
    def __init__(self, trace, name):
        self.trace = trace
        self.name = name

    async def run(self, arguments, context):
        self.trace.append(f"run:{self.name}:{context.workflow}")
        return self.name

    async def compensate(self, result, arguments, context):
        self.trace.append(f"undo:{self.name}")


@pytest.mark.asyncio
async def test_sub_workflow_shares_actor_and_is_rolled_back(context):
    trace = []
    inner = WorkflowBuilder("inner")
    inner.step("x", Counter(trace, "x"))
    inner.step("y", Counter(trace, "y"), wait_for=["x"])
    inner_workflow = inner.build()

    async def fail(arguments, ctx):
        raise PermanentError("outer failed")

    outer = WorkflowBuilder("outer")
    outer.step("nested", SubWorkflowStep(inner_workflow))
    outer.step("final", fail, arguments={"inner": result("nested", "value")})
    outcome = await WorkflowExecutor().execute(outer.build(), {}, context)

    assert not outcome.ok
    assert trace == ["run:x:inner", "run:y:inner", "undo:y", "undo:x"]


@pytest.mark.asyncio
async def test_sub_workflow_value_is_reachable(context):
    inner = WorkflowBuilder("inner")
    inner.step("x", lambda arguments, ctx: arguments["n"] * 2, arguments={"n": input_("n")})
    inner.input("n")

    outer = WorkflowBuilder("outer").input("n")
    outer.step("nested", SubWorkflowStep(inner.build()), arguments={"n": input_("n")})
    outer.step("final", lambda arguments, ctx: arguments["v"] + 1, arguments={"v": result("nested", "value")})
    outcome = await WorkflowExecutor().execute(outer.build(), {"n": 5}, context)

    assert outcome.ok
    assert outcome.value == 11


@pytest.mark.asyncio
async def test_step_with_timeout_sees_its_deadline(context):
    seen = {}

    async def probe_deadline(arguments, ctx):
        seen["deadline"] = ctx.deadline
        seen["remaining"] = ctx.time_remaining()

    builder = WorkflowBuilder("deadlines")
    builder.step("bounded", probe_deadline, timeout=5.0)
    builder.step("unbounded", lambda arguments, ctx: ctx.deadline, wait_for=["bounded"])
    outcome = await WorkflowExecutor().execute(builder.build(), {}, context)

    assert outcome.ok
    assert seen["deadline"] is not None
    assert 0 < seen["remaining"] <= 5.0
    assert outcome.results["unbounded"] is None


@pytest.mark.asyncio
async def test_workflow_timeout_compensates_completed_steps(context):
    trace = []

    async def quick(arguments, ctx):
        trace.append("run:quick")
        assert ctx.deadline is not None

    async def undo_quick(result, arguments, ctx):
        trace.append("undo:quick")

    async def slow(arguments, ctx):
        await asyncio.sleep(1)
        trace.append("run:slow")

    builder = WorkflowBuilder("bounded")
    builder.step("quick", quick, compensate=undo_quick)
    builder.step("slow", slow, wait_for=["quick"])
    outcome = await WorkflowExecutor().execute(builder.build(), {}, context, timeout=0.05)

    assert isinstance(outcome.error, TransientError)
    assert "timed out" in str(outcome.error)
    assert trace == ["run:quick", "undo:quick"]
    assert outcome.compensated == ["quick"]


@pytest.mark.asyncio
async def test_builtin_timeout_error_without_step_timeout(context):
    async def remote_call(arguments, ctx):
        raise TimeoutError("upstream read timed out")

    builder = WorkflowBuilder("remote")
    builder.step("call", remote_call, idempotent=False)
    outcome = await WorkflowExecutor().execute(builder.build(), {}, context)

    assert isinstance(outcome.error, TransientError)
    assert "upstream read timed out" in str(outcome.error)
    assert "None" not in str(outcome.error)


@pytest.mark.asyncio
async def test_cancellation_reaches_sub_workflow(context):
    trace = []
    flags = {"cancel": False}

    async def first(arguments, ctx):
        trace.append("inner:first")
        flags["cancel"] = True
        return "first"

    async def undo_first(result, arguments, ctx):
        trace.append("undo:first")

    inner = WorkflowBuilder("inner")
    inner.step("first", first, compensate=undo_first)
    inner.step("second", lambda arguments, ctx: trace.append("inner:second"), wait_for=["first"])

    outer = WorkflowBuilder("outer")
    outer.step("nested", SubWorkflowStep(inner.build()))
    outcome = await WorkflowExecutor().execute(
        outer.build(), {}, context, should_cancel=lambda: flags["cancel"]
    )

    assert isinstance(outcome.error, CancellationError)
    assert trace == ["inner:first", "undo:first"]


@pytest.mark.asyncio
async def test_sub_workflow_runs_on_parent_executor(context, sleeps):
    attempts = []

    async def flaky(arguments, ctx):
        attempts.append(len(attempts) + 1)
        if len(attempts) < 2:
            raise TransientError("blip")
        return "ok"

    inner = WorkflowBuilder("inner")
    inner.step("flaky", flaky, max_retries=1)

    outer = WorkflowBuilder("outer")
    outer.step("nested", SubWorkflowStep(inner.build()))
    executor = WorkflowExecutor(retry_policy=RetryPolicy(base=2.0, cap=10.0, jitter=0.0), sleep=sleeps)
    outcome = await executor.execute(outer.build(), {}, context)

    assert outcome.ok
    assert attempts == [1, 2]
    assert sleeps.delays == [2.0]
