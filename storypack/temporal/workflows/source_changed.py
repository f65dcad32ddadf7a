"""Workflow run when a source is added or re-ingested.

Activities are referenced by name so this module imports nothing
non-deterministic.
"""

from datetime import timedelta
from typing import Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

STAGE_RETRY = RetryPolicy(
    initial_interval=timedelta(seconds=5),
    backoff_coefficient=2.0,
    maximum_attempts=3,
)


@workflow.defn
class SourceChangedWorkflow:
    """Classify a source's chunks, then scan them for conflicts within the project."""

    @workflow.run
    async def run(
        self,
        workspace_id: str,
        project_id: str,
        source_id: str,
        project_context: Optional[str] = None,
    ) -> dict:
        workflow.logger.info(f"Source changed: {source_id}")

        classification = await workflow.execute_activity(
            "classify_source",
            source_id,
            start_to_close_timeout=timedelta(minutes=10),
            retry_policy=STAGE_RETRY,
        )

        conflicts = await workflow.execute_activity(
            "detect_conflicts",
            args=[workspace_id, project_id, source_id, project_context or ""],
            start_to_close_timeout=timedelta(minutes=15),
            retry_policy=STAGE_RETRY,
        )

        return {
            "source_id": source_id,
            "classification": classification["outcome"],
            "conflicts": conflicts,
        }
