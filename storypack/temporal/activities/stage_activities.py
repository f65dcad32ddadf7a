"""Temporal activities wrapping each pipeline stage.

Each activity opens its own session, runs one stage and returns a JSON-safe
dict. A ``failed`` stage outcome or an unavailable collaborator is raised as a
retryable ``ApplicationError`` so the orchestration layer decides whether to
retry; invalid input is raised as non-retryable.
"""

from contextlib import asynccontextmanager
from typing import Dict, List, Optional
from uuid import UUID

from temporalio import activity
from temporalio.exceptions import ApplicationError

from storypack.core.exceptions import CollaboratorUnavailable, NotFoundError, ValidationError
from storypack.models.outcomes import StageOutcome, StageStatus
from storypack.models.quality import SourceTopic
from storypack.repositories.chunk_repository import ChunkRepository
from storypack.temporal.runtime import Runtime


def raise_for_outcome(outcome: StageOutcome) -> None:
    if outcome.status == StageStatus.FAILED:
        raise ApplicationError(
            f"Stage {outcome.stage} failed",
            outcome.model_dump(mode="json"),
            type="StageFailed",
        )


@asynccontextmanager
async def translated_errors(description: str):
    """Map core exceptions onto Temporal's retry semantics."""
    try:
        yield
    except (ValidationError, NotFoundError) as e:
        activity.logger.warning(f"{description} rejected: {e}")
        raise ApplicationError(str(e), type=type(e).__name__, non_retryable=True) from e
    except CollaboratorUnavailable as e:
        activity.logger.error(f"{description} could not reach a collaborator: {e}")
        raise ApplicationError(str(e), type="CollaboratorUnavailable") from e


class StageActivities:
    """Activity implementations bound to one worker ``Runtime``."""

    def __init__(self, runtime: Runtime):
        self.runtime = runtime

    @property
    def all(self) -> List:
        return [
            self.classify_source,
            self.detect_conflicts,
            self.assess_quality,
            self.build_traceability_graph,
            self.create_baseline,
            self.recompute_pack_health,
            self.compute_portfolio_metrics,
        ]

    @activity.defn(name="classify_source")
    async def classify_source(self, source_id: str) -> Dict:
        activity.logger.info(f"Classifying chunks of source: {source_id}")

        async with translated_errors("Chunk classification"):
            async with self.runtime.database.session_maker() as session:
                result = await self.runtime.chunk_classifier(session).classify_source(UUID(source_id))

        raise_for_outcome(result.outcome)
        return {
            "outcome": result.outcome.model_dump(mode="json"),
            "unclassified_chunk_ids": [str(cid) for cid in result.unclassified_chunk_ids],
        }

    @activity.defn(name="detect_conflicts")
    async def detect_conflicts(
        self,
        workspace_id: str,
        project_id: str,
        source_id: Optional[str] = None,
        project_context: str = "",
    ) -> Dict:
        """Detect conflicts across the project, or only those touching ``source_id``'s chunks."""
        activity.logger.info(f"Detecting conflicts in project: {project_id}")

        async with translated_errors("Conflict detection"):
            async with self.runtime.database.session_maker() as session:
                changed = None
                if source_id:
                    changed = await ChunkRepository(session).get_ids_for_source(UUID(source_id))
                outcome = await self.runtime.conflict_detector(session).detect(
                    UUID(workspace_id),
                    UUID(project_id),
                    changed_chunk_ids=changed,
                    project_context=project_context,
                )

        raise_for_outcome(outcome)
        return outcome.model_dump(mode="json")

    @activity.defn(name="assess_quality")
    async def assess_quality(
        self, pack_version_id: str, topics: Optional[List[Dict]] = None, persist: bool = True
    ) -> Dict:
        activity.logger.info(f"Assessing quality of pack version: {pack_version_id}")

        async with translated_errors("Quality assessment"):
            async with self.runtime.database.session_maker() as session:
                report = await self.runtime.quality_aggregator(session).assess_version(
                    UUID(pack_version_id),
                    topics=[SourceTopic.model_validate(topic) for topic in topics or []],
                    persist=persist,
                )

        return report.model_dump(mode="json")

    @activity.defn(name="build_traceability_graph")
    async def build_traceability_graph(self, pack_version_id: str) -> Dict:
        async with translated_errors("Traceability graph"):
            async with self.runtime.database.session_maker() as session:
                graph = await self.runtime.traceability_service(session).build_for_version(
                    UUID(pack_version_id)
                )

        return graph.model_dump(mode="json")

    @activity.defn(name="create_baseline")
    async def create_baseline(self, pack_id: str, created_by: str, note: Optional[str] = None) -> Dict:
        activity.logger.info(f"Creating baseline for pack: {pack_id}")

        async with translated_errors("Baseline creation"):
            async with self.runtime.database.session_maker() as session:
                baseline = await self.runtime.baseline_service(session).create_baseline(
                    UUID(pack_id), created_by, note
                )

        return {
            "baseline_id": str(baseline.id),
            "version_number": baseline.version_number,
            "version_label": baseline.version_label,
        }

    @activity.defn(name="recompute_pack_health")
    async def recompute_pack_health(self, pack_id: str) -> Dict:
        async with translated_errors("Health recomputation"):
            async with self.runtime.database.session_maker() as session:
                result = await self.runtime.health_service(session).recompute(UUID(pack_id))

        payload = result.model_dump(mode="json")
        payload["worsened"] = result.worsened
        return payload

    @activity.defn(name="compute_portfolio_metrics")
    async def compute_portfolio_metrics(self, workspace_id: str) -> Dict:
        async with translated_errors("Portfolio analytics"):
            async with self.runtime.database.session_maker() as session:
                metrics = await self.runtime.portfolio_service(session).get_metrics(UUID(workspace_id))

        return metrics.model_dump(mode="json")
