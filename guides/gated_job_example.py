"""Example: run a gated three-step job in one process.

The same job module can be served by separate processes instead:

    batchstep worker run nightly-report --module guides.gated_job_example
    batchstep maintenance run --module guides.gated_job_example --interval 5
"""

import asyncio

from batchstep import (
    JobDefinition,
    MaintenanceRunner,
    StepOutcome,
    WorkChunkDispatcher,
    WorkChunkExecutor,
    WorkChunkService,
    get_repository,
    get_transport,
    register_job_definition,
)
from batchstep.registry import REGISTRY

REPORT_JOB = JobDefinition.from_step_ids(
    "nightly-report", ["list-accounts", "summarize", "publish"], gated_execution=True
)


async def list_accounts(details):
    return StepOutcome.completed(
        outputs=[{"account": f"acct-{i}"} for i in range(details.parameters.get("accounts", 3))]
    )


async def summarize(details):
    account = details.json_data()["account"]
    return StepOutcome.completed(outputs=[{"account": account, "total": 42}], records_processed=1)


async def publish(details):
    print(f"📄 Published {details.json_data()}")
    return StepOutcome.completed(records_processed=1)


register_job_definition(
    REPORT_JOB,
    {"list-accounts": list_accounts, "summarize": summarize, "publish": publish},
)


async def main():
    repository = get_repository()
    transport = get_transport()
    await transport.connect()

    service = WorkChunkService(repository, registry=REGISTRY)
    dispatcher = WorkChunkDispatcher(repository, transport)
    runner = MaintenanceRunner(service, dispatcher, REGISTRY)
    executor = WorkChunkExecutor(transport, service, REGISTRY, REPORT_JOB.definition_id)

    instance_id = await service.start_job(REPORT_JOB, parameters={"accounts": 3})
    print(f"✅ Job started: {instance_id}")

    worker = asyncio.create_task(executor.start(lifespan=10))
    while (await service.fetch_instance(instance_id)).status.is_active:
        await runner.run_maintenance_pass()
        await asyncio.sleep(0.2)
    worker.cancel()

    instance = await service.fetch_instance(instance_id)
    print(f"🏁 Job {instance_id} finished as {instance.status}")
    await transport.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
