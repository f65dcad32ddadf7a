"""Conflict detection stage.

Finds topically close chunk pairs from different sources of one project,
asks the contradiction judge about each pair once, and records one conflict
per unordered pair. Pairs are canonicalised so ``(A, B)`` and ``(B, A)`` are
the same key; pairs already on record are skipped before any judge call, and
the insert itself is ``ON CONFLICT DO NOTHING`` for concurrent runs.
"""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from storypack.core.config import JudgeSettings
from storypack.core.exceptions import CollaboratorUnavailable
from storypack.models.conflicts import CandidatePair
from storypack.models.outcomes import JudgeOutcome, StageErrorKind, StageOutcome, StageStatus
from storypack.repositories.chunk_repository import ChunkRepository
from storypack.repositories.conflict_repository import ConflictRepository
from storypack.services.judges.contradiction_judge import ContradictionJudge
from storypack.utils.batching import BatchProcessor
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)

STAGE_NAME = "conflict_detection"


def canonical_candidates(
    pairs: Sequence[CandidatePair], existing: set
) -> Tuple[List[CandidatePair], int]:
    """Canonicalise ``pairs``, dropping in-run duplicates and recorded pairs.

    Returns:
        ``(pairs_to_judge, skipped_count)``
    """
    seen: Dict[Tuple[str, str], CandidatePair] = {}
    skipped = 0
    for pair in pairs:
        if pair.chunk_a_id == pair.chunk_b_id:
            skipped += 1
            continue
        canonical = pair.canonical()
        key = canonical.key
        if key in existing or key in seen:
            skipped += 1
            continue
        seen[key] = canonical
    return list(seen.values()), skipped


class ConflictDetector:
    """Detects and records contradicting chunk pairs within a project."""

    def __init__(
        self,
        judge: ContradictionJudge,
        chunk_repository: ChunkRepository,
        conflict_repository: ConflictRepository,
        settings: JudgeSettings,
    ):
        self.judge = judge
        self.chunk_repository = chunk_repository
        self.conflict_repository = conflict_repository
        self.settings = settings

    async def detect(
        self,
        workspace_id: UUID,
        project_id: UUID,
        changed_chunk_ids: Optional[Sequence[UUID]] = None,
        project_context: str = "",
    ) -> StageOutcome:
        """Run one detection pass.

        Args:
            workspace_id: Owning workspace
            project_id: Project whose sources are compared
            changed_chunk_ids: Restrict candidates to pairs touching these chunks
            project_context: Short description passed to the judge

        Returns:
            StageOutcome: ``created`` counts new conflicts; ``partial`` when some
            batches failed (conflicts from other batches are kept); ``failed``
            when similarity search or persistence was unavailable.
        """
        outcome = StageOutcome(stage=STAGE_NAME)

        try:
            candidates = await self.chunk_repository.nearest_pairs(
                project_id,
                min_similarity=self.settings.conflict_similarity_floor,
                chunk_ids=changed_chunk_ids,
            )
            existing = await self.conflict_repository.get_existing_pairs(project_id)
        except CollaboratorUnavailable as e:
            LOGGER.error(
                f"Similarity search unavailable for project {project_id}",
                exc_info=True,
            )
            outcome.record_error(StageErrorKind.COLLABORATOR_UNAVAILABLE, str(e))
            outcome.status = StageStatus.FAILED
            return outcome

        to_judge, skipped = canonical_candidates(candidates, existing)
        outcome.processed = len(candidates)
        outcome.skipped = skipped

        if not to_judge:
            LOGGER.info(
                "No new candidate pairs to judge",
                extra={"project_id": str(project_id), "candidates": len(candidates)},
            )
            return outcome

        batches = BatchProcessor.create_batches(to_judge, self.settings.conflict_batch_size)
        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        async def run_batch(index: int, batch: List[CandidatePair]) -> Tuple[int, List[CandidatePair], JudgeOutcome]:
            async with semaphore:
                return index, batch, await self.judge.judge(batch, project_context)

        LOGGER.info(
            f"Judging {len(to_judge)} candidate pairs in {len(batches)} batches",
            extra={"project_id": str(project_id), "skipped": skipped},
        )

        failed_batches = 0
        tasks = [asyncio.create_task(run_batch(i, batch)) for i, batch in enumerate(batches)]
        for next_done in asyncio.as_completed(tasks):
            batch_index, batch, judged = await next_done

            if not judged.success:
                failed_batches += 1
                outcome.record_error(
                    StageErrorKind.JUDGE_FAILURE,
                    judged.message or "contradiction judge failed",
                    batch_index=batch_index,
                    error_kind=judged.error_kind.value if judged.error_kind else None,
                )
                continue

            try:
                outcome.created += await self._persist_batch(workspace_id, project_id, batch, judged.data)
            except SQLAlchemyError as e:
                failed_batches += 1
                LOGGER.error(
                    f"Failed to persist conflicts for batch {batch_index}",
                    exc_info=True,
                )
                outcome.record_error(
                    StageErrorKind.COLLABORATOR_UNAVAILABLE, str(e), batch_index=batch_index
                )

        outcome.finalize(attempted_batches=len(batches), failed_batches=failed_batches)
        LOGGER.info(
            f"Conflict detection finished: {outcome.created} new conflicts",
            extra={"project_id": str(project_id), "status": outcome.status.value},
        )
        return outcome

    async def _persist_batch(self, workspace_id, project_id, batch, verdicts) -> int:
        created = 0
        for verdict in verdicts:
            if not verdict.contradicts:
                continue
            pair = batch[verdict.pair_index]
            conflict_id = await self.conflict_repository.create_if_absent(
                workspace_id=workspace_id,
                project_id=project_id,
                chunk_a_id=pair.chunk_a_id,
                chunk_b_id=pair.chunk_b_id,
                similarity=pair.similarity,
                summary=verdict.summary,
                confidence=verdict.confidence,
            )
            if conflict_id is not None:
                created += 1
        return created

    async def purge_stale_conflicts(self, project_id: UUID) -> int:
        """Explicit cleanup of conflicts that cite chunks of deleted sources."""
        return await self.conflict_repository.purge_stale(project_id)
