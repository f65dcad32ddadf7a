from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from storypack.database.models import (
    AcceptanceCriterion,
    EvidenceLink,
    Pack,
    PackVersion,
    QAFlag,
    Source,
    SourceChunk,
    Story,
    Workspace,
)
from storypack.models.evidence import EvidenceEntityType
from storypack.repositories.base_repository import BaseRepository


class PackRepository(BaseRepository[Pack]):
    """Repository for packs, their versions and the artefacts hanging off them."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Pack)

    def _version_query(self):
        return select(PackVersion).options(
            selectinload(PackVersion.stories).selectinload(Story.acceptance_criteria)
        )

    async def get_version(self, pack_version_id: UUID) -> Optional[PackVersion]:
        """Load a version with its stories and criteria."""
        async def _query():
            result = await self.session.execute(
                self._version_query().where(PackVersion.id == pack_version_id)
            )
            return result.scalar_one_or_none()

        return await self._read(_query, f"get pack version {pack_version_id}")

    async def get_latest_version(self, pack_id: UUID, approved_only: bool = False) -> Optional[PackVersion]:
        query = self._version_query().where(PackVersion.pack_id == pack_id)
        if approved_only:
            query = query.where(PackVersion.approved.is_(True))
        query = query.order_by(PackVersion.version_number.desc()).limit(1)

        async def _query():
            result = await self.session.execute(query)
            return result.scalar_one_or_none()

        return await self._read(_query, f"latest version of pack {pack_id}")

    async def get_health_weights(self, workspace_id: UUID) -> Optional[Dict[str, Any]]:
        """The workspace's health weight overrides, None when it has none."""
        async def _query():
            result = await self.session.execute(
                select(Workspace.health_weights).where(Workspace.id == workspace_id)
            )
            return result.scalar_one_or_none()

        return await self._read(_query, f"health weights of workspace {workspace_id}")

    async def get_evidence_links(
        self, story_ids: Sequence[UUID], criterion_ids: Sequence[UUID]
    ) -> List[EvidenceLink]:
        """All links on the given stories and criteria."""
        conditions = []
        if story_ids:
            conditions.append(
                (EvidenceLink.entity_type == EvidenceEntityType.STORY.value)
                & EvidenceLink.entity_id.in_(list(story_ids))
            )
        if criterion_ids:
            conditions.append(
                (EvidenceLink.entity_type == EvidenceEntityType.ACCEPTANCE_CRITERION.value)
                & EvidenceLink.entity_id.in_(list(criterion_ids))
            )
        if not conditions:
            return []

        async def _query():
            result = await self.session.execute(
                select(EvidenceLink).where(or_(*conditions)).order_by(EvidenceLink.created_at)
            )
            return list(result.scalars().all())

        return await self._read(_query, "evidence links")

    async def get_qa_flags(self, pack_version_id: UUID) -> List[QAFlag]:
        async def _query():
            result = await self.session.execute(
                select(QAFlag).where(QAFlag.pack_version_id == pack_version_id)
            )
            return list(result.scalars().all())

        return await self._read(_query, f"QA flags for version {pack_version_id}")

    async def get_sources_with_chunk_counts(self, source_ids: Sequence[UUID]) -> List[tuple]:
        """``(Source, chunk_count)`` rows for the given source ids."""
        if not source_ids:
            return []

        async def _query():
            result = await self.session.execute(
                select(Source, func.count(SourceChunk.id))
                .outerjoin(SourceChunk, SourceChunk.source_id == Source.id)
                .where(Source.id.in_(list(source_ids)))
                .group_by(Source.id)
            )
            return [(row[0], int(row[1])) for row in result.all()]

        return await self._read(_query, "sources with chunk counts")

    async def get_chunks(self, chunk_ids: Sequence[UUID]) -> List[SourceChunk]:
        if not chunk_ids:
            return []

        async def _query():
            result = await self.session.execute(
                select(SourceChunk).where(SourceChunk.id.in_(list(chunk_ids)))
            )
            return list(result.scalars().all())

        return await self._read(_query, "chunks for pack version")

    async def get_latest_source_update(self, source_ids: Sequence[UUID]) -> Optional[datetime]:
        if not source_ids:
            return None

        async def _query():
            result = await self.session.execute(
                select(func.max(Source.updated_at)).where(Source.id.in_(list(source_ids)))
            )
            return result.scalar_one_or_none()

        return await self._read(_query, "latest source update")

    async def mark_diverged(self, pack_id: UUID) -> bool:
        """Flag a pack as edited since its last baseline.

        Returns:
            True if the pack exists and has a baseline to diverge from
        """
        try:
            result = await self.session.execute(
                update(Pack)
                .where(Pack.id == pack_id)
                .where(Pack.last_baseline_id.is_not(None))
                .values(diverged_from_baseline=True)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error marking pack {pack_id} diverged: {str(e)}",
                exc_info=True
            )
            raise
        return bool(result.rowcount)

    async def save_quality_report(self, pack_version_id: UUID, report: Dict[str, Any]) -> None:
        try:
            await self.session.execute(
                update(PackVersion)
                .where(PackVersion.id == pack_version_id)
                .values(quality_report=report)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error saving quality report for version {pack_version_id}: {str(e)}",
                exc_info=True
            )
            raise


def live_stories(version: PackVersion) -> List[Story]:
    """Non-deleted stories of ``version`` in stored sort order."""
    return sorted(
        (s for s in version.stories if s.deleted_at is None),
        key=lambda s: s.sort_order,
    )


def live_criteria(story: Story) -> List[AcceptanceCriterion]:
    return sorted(
        (ac for ac in story.acceptance_criteria if ac.deleted_at is None),
        key=lambda ac: ac.sort_order,
    )