"""Example: dispatch a compensating workflow and let a worker run it.

Uses SQLite when ``SAGAFLOW_DATABASE_URL`` is set (e.g. ``sqlite://jobs.db``),
otherwise an in-memory queue.
"""

import asyncio
import logging

from sagaflow import (
    ActorContext,
    JobQueue,
    PermanentError,
    Role,
    Worker,
    WorkflowBuilder,
    WorkflowDispatcher,
    WorkflowRegistry,
    get_job_repository,
    input_,
    load_config,
    result,
)

PROJECTS = {}


async def create_project(arguments, ctx):
    project_id = f"proj-{len(PROJECTS) + 1}"
    PROJECTS[project_id] = {"name": arguments["name"], "tenant_id": ctx.actor.tenant_id}
    print(f"created {project_id} for tenant {ctx.actor.tenant_id}")
    return {"id": project_id}


async def delete_project(created, arguments, ctx):
    PROJECTS.pop(created["id"], None)
    print(f"rolled back {created['id']}")


async def provision_billing(arguments, ctx):
    if arguments["plan"] == "unknown":
        raise PermanentError("unknown billing plan")
    return {"project": arguments["project"], "plan": arguments["plan"]}


def build_workflow():
    builder = WorkflowBuilder("onboard_project").input("name", "plan")
    builder.step(
        "create",
        create_project,
        arguments={"name": input_("name")},
        compensate=delete_project,
    )
    builder.step(
        "billing",
        provision_billing,
        arguments={"project": result("create", "id"), "plan": input_("plan")},
    )
    return builder.build()


async def main():
    logging.basicConfig(level=logging.INFO)
    config = load_config()
    job_queue = JobQueue(get_job_repository(config=config), config=config.queue)

    registry = WorkflowRegistry()
    registry.register(build_workflow())
    dispatcher = WorkflowDispatcher(job_queue, registry)

    actor = ActorContext(id="user-42", tenant_id="acme", role=Role.EDITOR)
    ok = await dispatcher.dispatch("onboard_project", {"name": "apollo", "plan": "pro"}, actor)
    bad = await dispatcher.dispatch("onboard_project", {"name": "gemini", "plan": "unknown"}, actor)

    worker = Worker.from_config(job_queue, config, registry=registry)
    await worker.start(lifespan=2)

    for job_id in (ok.id, bad.id):
        job = await job_queue.get(job_id)
        print(f"{job.id}: {job.state.value} {job.last_error or ''}")
    print(f"projects left: {PROJECTS}")


if __name__ == "__main__":
    asyncio.run(main())
