"""Chunk classification stage.

Tags source chunks with one label from the closed vocabulary and writes the
tag and confidence back onto each chunk. Batches are bounded by both chunk
count and estimated prompt tokens and are sent to the judge with a bounded
fan-out. A failed batch leaves its chunks unclassified (null tag) without
failing the other batches.
"""

import asyncio
from typing import List, Sequence
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from storypack.core.config import JudgeSettings
from storypack.core.exceptions import CollaboratorUnavailable, ValidationError
from storypack.models.evidence import ChunkClassification, ChunkInput
from storypack.models.outcomes import StageErrorKind, StageOutcome, StageStatus
from storypack.prompts.judge_prompts import truncate
from storypack.repositories.chunk_repository import ChunkRepository
from storypack.services.judges.classification_judge import ClassificationJudge
from storypack.utils.batching import BatchProcessor
from storypack.utils.logging import get_logger
from storypack.utils.token_counter import TokenCounter

LOGGER = get_logger(__name__)

STAGE_NAME = "chunk_classification"


class ClassificationResult(BaseModel):
    outcome: StageOutcome
    classifications: List[ChunkClassification] = Field(default_factory=list)
    unclassified_chunk_ids: List[UUID] = Field(default_factory=list)


class ChunkClassifier:
    """Classifies chunks in judge-sized batches and persists the tags.

    Re-running on classified chunks overwrites their tags (last write wins).
    """

    def __init__(
        self,
        judge: ClassificationJudge,
        chunk_repository: ChunkRepository,
        settings: JudgeSettings,
        token_counter: TokenCounter = None,
    ):
        self.judge = judge
        self.chunk_repository = chunk_repository
        self.settings = settings
        self.token_counter = token_counter or TokenCounter()

    async def classify(self, chunks: Sequence[ChunkInput]) -> ClassificationResult:
        """Classify and persist ``chunks``.

        Raises:
            ValidationError: If ``chunks`` is empty
        """
        if not chunks:
            raise ValidationError("Cannot classify an empty chunk list")

        outcome = StageOutcome(stage=STAGE_NAME, processed=len(chunks))

        batches = BatchProcessor.create_token_batches(
            list(chunks),
            text_of=lambda chunk: truncate(chunk.content, self.settings.classification_chunk_chars),
            max_items=self.settings.classification_batch_size,
            max_tokens=self.settings.classification_max_tokens_per_batch,
            token_counter=self.token_counter,
        )

        LOGGER.info(
            f"Classifying {len(chunks)} chunks in {len(batches)} batches",
            extra={"max_concurrency": self.settings.max_concurrency},
        )

        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        async def run_batch(batch: List[ChunkInput]):
            async with semaphore:
                return await self.judge.classify(batch)

        judge_outcomes = await asyncio.gather(*(run_batch(batch) for batch in batches))

        classifications: List[ChunkClassification] = []
        failed_batches = 0
        for batch_index, judged in enumerate(judge_outcomes):
            if judged.success:
                classifications.extend(judged.data)
                continue
            failed_batches += 1
            outcome.record_error(
                StageErrorKind.JUDGE_FAILURE,
                judged.message or "classification judge failed",
                batch_index=batch_index,
                error_kind=judged.error_kind.value if judged.error_kind else None,
            )

        classified_ids = {c.chunk_id for c in classifications}
        unclassified = [chunk.id for chunk in chunks if chunk.id not in classified_ids]

        try:
            outcome.created = await self.chunk_repository.save_classifications(classifications)
        except (CollaboratorUnavailable, SQLAlchemyError) as e:
            LOGGER.error("Failed to persist chunk classifications", exc_info=True)
            outcome.record_error(StageErrorKind.COLLABORATOR_UNAVAILABLE, str(e))
            outcome.status = StageStatus.FAILED
            return ClassificationResult(outcome=outcome, unclassified_chunk_ids=[c.id for c in chunks])

        outcome.skipped = len(unclassified)
        outcome.finalize(attempted_batches=len(batches), failed_batches=failed_batches)

        LOGGER.info(
            f"Classified {len(classifications)}/{len(chunks)} chunks",
            extra={"status": outcome.status.value, "failed_batches": failed_batches},
        )

        return ClassificationResult(
            outcome=outcome,
            classifications=classifications,
            unclassified_chunk_ids=unclassified,
        )

    async def classify_source(self, source_id: UUID) -> ClassificationResult:
        """Classify every chunk of a source that has no tag yet."""
        rows = await self.chunk_repository.get_unclassified(source_id)
        if not rows:
            LOGGER.info(f"No unclassified chunks for source {source_id}")
            return ClassificationResult(outcome=StageOutcome(stage=STAGE_NAME))

        return await self.classify([ChunkInput(id=row.id, content=row.content) for row in rows])
