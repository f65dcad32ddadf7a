from typing import Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import delete, or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storypack.database.models import EvidenceConflict, Source, SourceChunk
from storypack.repositories.base_repository import BaseRepository


class ConflictRepository(BaseRepository[EvidenceConflict]):
    """Repository for evidence conflicts keyed by canonical chunk pair."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, EvidenceConflict)

    async def get_existing_pairs(self, project_id: UUID) -> Set[Tuple[str, str]]:
        """Canonical ``(chunk_a_id, chunk_b_id)`` string pairs already recorded."""
        async def _query():
            result = await self.session.execute(
                select(EvidenceConflict.chunk_a_id, EvidenceConflict.chunk_b_id)
                .where(EvidenceConflict.project_id == project_id)
            )
            return result.all()

        rows = await self._read(_query, f"existing conflicts for project {project_id}")
        return {(str(a), str(b)) for a, b in rows}

    async def create_if_absent(
        self,
        workspace_id: UUID,
        project_id: UUID,
        chunk_a_id: UUID,
        chunk_b_id: UUID,
        similarity: float,
        summary: str,
        confidence: float,
    ) -> Optional[UUID]:
        """Insert one conflict for a canonical pair.

        A concurrent writer that already recorded the pair makes this a
        no-op: the unique constraint is the idempotency guarantee itself.

        Returns:
            The new row id, or None if the pair already existed
        """
        if str(chunk_a_id) >= str(chunk_b_id):
            raise ValueError("chunk pair must be in canonical order")

        stmt = (
            insert(EvidenceConflict)
            .values(
                workspace_id=workspace_id,
                project_id=project_id,
                chunk_a_id=chunk_a_id,
                chunk_b_id=chunk_b_id,
                similarity=similarity,
                contradicts=True,
                summary=summary,
                confidence=confidence,
            )
            .on_conflict_do_nothing(constraint="uq_evidence_conflict_pair")
            .returning(EvidenceConflict.id)
        )

        try:
            result = await self.session.execute(stmt)
            conflict_id = result.scalar_one_or_none()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error creating conflict {chunk_a_id}:{chunk_b_id}: {str(e)}",
                exc_info=True
            )
            raise

        if conflict_id is None:
            self.logger.info(
                "Conflict pair already recorded",
                extra={"chunk_a_id": str(chunk_a_id), "chunk_b_id": str(chunk_b_id)},
            )
        return conflict_id

    async def purge_stale(self, project_id: UUID) -> int:
        """Delete conflicts that reference a chunk of a deleted source.

        This is the only path that removes conflicts; detection never does.
        """
        stale_chunks = (
            select(SourceChunk.id)
            .join(Source, Source.id == SourceChunk.source_id)
            .where(Source.project_id == project_id)
            .where(Source.deleted_at.is_not(None))
        )
        stmt = (
            delete(EvidenceConflict)
            .where(EvidenceConflict.project_id == project_id)
            .where(
                or_(
                    EvidenceConflict.chunk_a_id.in_(stale_chunks),
                    EvidenceConflict.chunk_b_id.in_(stale_chunks),
                )
            )
        )
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error purging stale conflicts for project {project_id}: {str(e)}",
                exc_info=True
            )
            raise

        removed = result.rowcount or 0
        self.logger.info(
            f"Purged {removed} stale conflicts",
            extra={"project_id": str(project_id)},
        )
        return removed

