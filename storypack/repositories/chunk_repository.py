from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import Select, and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from storypack.database.models import EvidenceConflict, Source, SourceChunk
from storypack.models.conflicts import CandidatePair
from storypack.models.evidence import ChunkClassification
from storypack.repositories.base_repository import BaseRepository


class ChunkRepository(BaseRepository[SourceChunk]):
    """Repository for source chunks, their classification and similarity search."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, SourceChunk)

    async def get_ids_for_source(self, source_id: UUID) -> List[UUID]:
        async def _query():
            result = await self.session.execute(
                select(SourceChunk.id)
                .where(SourceChunk.source_id == source_id)
                .order_by(SourceChunk.chunk_index)
            )
            return list(result.scalars().all())

        return await self._read(_query, f"chunk ids of source {source_id}")

    async def get_unclassified(self, source_id: UUID, limit: int = 500) -> List[SourceChunk]:
        async def _query():
            result = await self.session.execute(
                select(SourceChunk)
                .where(SourceChunk.source_id == source_id)
                .where(SourceChunk.classification_tag.is_(None))
                .order_by(SourceChunk.chunk_index)
                .limit(limit)
            )
            return list(result.scalars().all())

        return await self._read(_query, f"unclassified chunks of source {source_id}")

    async def save_classifications(self, classifications: List[ChunkClassification]) -> int:
        """Overwrite tag and confidence for each classified chunk.

        Last write wins: an already classified chunk is simply overwritten.

        Returns:
            Number of rows updated
        """
        if not classifications:
            return 0

        updated = 0
        try:
            for item in classifications:
                result = await self.session.execute(
                    update(SourceChunk)
                    .where(SourceChunk.id == item.chunk_id)
                    .values(
                        classification_tag=item.tag.value,
                        classification_confidence=item.confidence,
                    )
                )
                updated += result.rowcount or 0
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error saving chunk classifications: {str(e)}",
                exc_info=True
            )
            raise

        return updated

    async def nearest_pairs(
        self,
        project_id: UUID,
        min_similarity: float,
        chunk_ids: Optional[Sequence[UUID]] = None,
        page_size: int = 200,
    ) -> List[CandidatePair]:
        """Unrecorded chunk pairs from different sources of one project above ``min_similarity``.

        Similarity is ``1 - cosine_distance`` over the chunk embeddings. When
        ``chunk_ids`` is given, at least one side of each pair must be in it.
        Pairs already stored as a conflict are excluded in the query, and pages
        of ``page_size`` are fetched until the result is exhausted. Pairs are
        returned once, ordered by descending similarity.
        """
        query = nearest_pairs_query(project_id, min_similarity, chunk_ids)

        rows = []
        offset = 0
        while True:
            page_query = query.limit(page_size).offset(offset)

            async def _query():
                result = await self.session.execute(page_query)
                return result.all()

            page = await self._read(
                _query, f"similarity search for project {project_id} at offset {offset}"
            )
            rows.extend(page)
            if len(page) < page_size:
                break
            offset += page_size

        return [
            CandidatePair(
                chunk_a_id=row[0],
                chunk_b_id=row[1],
                content_a=row[2],
                content_b=row[3],
                similarity=float(row[4]),
                source_a_name=row[5],
                source_b_name=row[6],
            )
            for row in rows
        ]


def nearest_pairs_query(
    project_id: UUID,
    min_similarity: float,
    chunk_ids: Optional[Sequence[UUID]] = None,
) -> Select:
    """Canonically ordered candidate pairs with no conflict row yet."""
    chunk_a = aliased(SourceChunk)
    chunk_b = aliased(SourceChunk)
    source_a = aliased(Source)
    source_b = aliased(Source)

    similarity = (1 - chunk_a.embedding.cosine_distance(chunk_b.embedding)).label("similarity")
    recorded = (
        select(EvidenceConflict.id)
        .where(EvidenceConflict.project_id == project_id)
        .where(EvidenceConflict.chunk_a_id == chunk_a.id)
        .where(EvidenceConflict.chunk_b_id == chunk_b.id)
        .exists()
    )

    query = (
        select(
            chunk_a.id,
            chunk_b.id,
            chunk_a.content,
            chunk_b.content,
            similarity,
            source_a.name,
            source_b.name,
        )
        .select_from(chunk_a)
        .join(source_a, source_a.id == chunk_a.source_id)
        .join(
            chunk_b,
            and_(chunk_a.id < chunk_b.id, chunk_a.source_id != chunk_b.source_id),
        )
        .join(source_b, source_b.id == chunk_b.source_id)
        .where(source_a.project_id == project_id)
        .where(source_b.project_id == project_id)
        .where(source_a.deleted_at.is_(None))
        .where(source_b.deleted_at.is_(None))
        .where(chunk_a.embedding.is_not(None))
        .where(chunk_b.embedding.is_not(None))
        .where(similarity >= min_similarity)
        .where(~recorded)
        # Tie-break on ids so offset pages are stable
        .order_by(similarity.desc(), chunk_a.id, chunk_b.id)
    )
    if chunk_ids:
        ids = list(chunk_ids)
        query = query.where(chunk_a.id.in_(ids) | chunk_b.id.in_(ids))
    return query
