"""Temporal worker for the evidence engine.

Builds the process ``Runtime`` once, registers the stage activities and the
source workflow, and polls the configured task queue.
"""

import asyncio

from temporalio.client import Client
from temporalio.worker import Worker

from storypack.core.config import get_settings
from storypack.temporal.activities.stage_activities import StageActivities
from storypack.temporal.runtime import Runtime
from storypack.temporal.workflows.source_changed import SourceChangedWorkflow
from storypack.utils.logging import get_logger

logger = get_logger(__name__)

MAX_CONCURRENT_ACTIVITIES = 5
MAX_CONCURRENT_WORKFLOW_TASKS = 10


async def main():
    """Start the Temporal worker."""
    settings = get_settings()
    runtime = Runtime.from_settings(settings)
    await runtime.database.connect()

    target_host = f"{settings.temporal.host}:{settings.temporal.port}"
    logger.info(f"Connecting to Temporal server at {target_host}")

    client = await Client.connect(target_host=target_host, namespace=settings.temporal.namespace)

    activities = StageActivities(runtime)
    worker = Worker(
        client,
        task_queue=settings.temporal.task_queue,
        workflows=[SourceChangedWorkflow],
        activities=activities.all,
        max_concurrent_activities=MAX_CONCURRENT_ACTIVITIES,
        max_concurrent_workflow_tasks=MAX_CONCURRENT_WORKFLOW_TASKS,
    )

    logger.info("=" * 60)
    logger.info("Temporal Worker Started Successfully")
    logger.info("=" * 60)
    logger.info(f"Task Queue: {settings.temporal.task_queue}")
    logger.info(f"Registered Activities: {len(activities.all)}")
    logger.info("Worker is now polling for tasks...")

    try:
        await worker.run()
    finally:
        await runtime.database.disconnect()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        raise
