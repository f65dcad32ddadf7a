from collections import defaultdict
from typing import Dict, List
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storypack.database.models import (
    Baseline,
    ChangeRequest,
    EvidenceConflict,
    EvidenceLink,
    Pack,
    PackEditEvent,
    PackVersion,
    Project,
    QAFlag,
    Source,
    SourceChunk,
    Story,
    StoryExport,
    Workspace,
)
from storypack.models.evidence import EvidenceEntityType
from storypack.models.portfolio import (
    BaselineRow,
    ChangeRequestRow,
    ConflictRow,
    DateRange,
    EditEventRow,
    PackRow,
    PortfolioData,
    ProjectRow,
    QAFlagRow,
    SourceRow,
)
from storypack.repositories.base_repository import BaseRepository


class PortfolioRepository(BaseRepository[Workspace]):
    """Read-only loader for workspace-wide analytics.

    Every query is a plain SELECT; nothing here writes.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(session, Workspace)

    async def _rows(self, query, description: str) -> list:
        async def _query():
            result = await self.session.execute(query)
            return result.all()

        return await self._read(_query, description)

    async def load(self, workspace_id: UUID, date_range: DateRange) -> PortfolioData:
        """Load every row the portfolio metrics read for one workspace."""
        project_rows = await self._rows(
            select(Project.id, Project.name, func.min(Source.created_at))
            .outerjoin(Source, (Source.project_id == Project.id) & Source.deleted_at.is_(None))
            .where(Project.workspace_id == workspace_id)
            .where(Project.deleted_at.is_(None))
            .group_by(Project.id, Project.name),
            "workspace projects",
        )
        projects = [
            ProjectRow(id=str(pid), name=name, first_source_at=first_source)
            for pid, name, first_source in project_rows
        ]

        packs = await self._load_packs(workspace_id)

        evidence_rows = await self._rows(
            select(EvidenceLink.entity_id)
            .join(SourceChunk, SourceChunk.id == EvidenceLink.source_chunk_id)
            .join(Source, Source.id == SourceChunk.source_id)
            .where(Source.workspace_id == workspace_id)
            .where(EvidenceLink.entity_type == EvidenceEntityType.STORY.value)
            .distinct(),
            "stories with evidence",
        )

        baseline_rows = await self._rows(
            select(Baseline.pack_id, Project.name, Baseline.created_at)
            .join(Pack, Pack.id == Baseline.pack_id)
            .join(Project, Project.id == Pack.project_id)
            .where(Baseline.workspace_id == workspace_id)
            .where(Baseline.created_at >= date_range.start)
            .where(Baseline.created_at <= date_range.end),
            "baselines in range",
        )

        change_rows = await self._rows(
            select(ChangeRequest.status, ChangeRequest.created_at)
            .where(ChangeRequest.workspace_id == workspace_id)
            .where(ChangeRequest.created_at >= date_range.start)
            .where(ChangeRequest.created_at <= date_range.end),
            "change requests in range",
        )

        edit_rows = await self._rows(
            select(PackEditEvent.pack_id, PackEditEvent.created_at)
            .where(PackEditEvent.workspace_id == workspace_id)
            .where(PackEditEvent.created_at >= date_range.start)
            .where(PackEditEvent.created_at <= date_range.end),
            "pack edits in range",
        )

        flag_rows = await self._rows(
            select(QAFlag.entity_id, QAFlag.rule_code, QAFlag.created_at)
            .join(PackVersion, PackVersion.id == QAFlag.pack_version_id)
            .join(Pack, Pack.id == PackVersion.pack_id)
            .where(Pack.workspace_id == workspace_id),
            "workspace QA flags",
        )

        conflict_rows = await self._rows(
            select(EvidenceConflict.project_id, EvidenceConflict.resolution)
            .where(EvidenceConflict.workspace_id == workspace_id)
            .where(EvidenceConflict.resolution.is_(None)),
            "unresolved conflicts",
        )

        source_rows = await self._rows(
            select(Source.id, Source.updated_at)
            .where(Source.workspace_id == workspace_id)
            .where(Source.deleted_at.is_(None)),
            "workspace sources",
        )

        return PortfolioData(
            workspace_id=str(workspace_id),
            projects=projects,
            packs=packs,
            story_ids_with_evidence=[str(row[0]) for row in evidence_rows],
            baselines=[
                BaselineRow(pack_id=str(pack_id), project_name=name, created_at=created)
                for pack_id, name, created in baseline_rows
            ],
            change_requests=[
                ChangeRequestRow(status=status, created_at=created) for status, created in change_rows
            ],
            edit_events=[
                EditEventRow(pack_id=str(pack_id), created_at=created) for pack_id, created in edit_rows
            ],
            qa_flags=[
                QAFlagRow(entity_id=str(entity_id), rule_code=rule, created_at=created)
                for entity_id, rule, created in flag_rows
            ],
            conflicts=[
                ConflictRow(project_id=str(project_id), resolved=resolution is not None)
                for project_id, resolution in conflict_rows
            ],
            sources=[SourceRow(id=str(sid), updated_at=updated) for sid, updated in source_rows],
        )

    async def _load_packs(self, workspace_id: UUID) -> List[PackRow]:
        pack_rows = await self._rows(
            select(Pack.id, Pack.name, Pack.project_id, Project.name)
            .join(Project, Project.id == Pack.project_id)
            .where(Pack.workspace_id == workspace_id),
            "workspace packs",
        )
        if not pack_rows:
            return []

        pack_ids = [row[0] for row in pack_rows]

        version_rows = await self._rows(
            select(
                PackVersion.id,
                PackVersion.pack_id,
                PackVersion.version_number,
                PackVersion.created_at,
                PackVersion.approved,
            ).where(PackVersion.pack_id.in_(pack_ids)),
            "pack versions",
        )
        latest_version: Dict[UUID, tuple] = {}
        first_version_at: Dict[UUID, object] = {}
        approved = set()
        for version_id, pack_id, number, created, is_approved in version_rows:
            if pack_id not in latest_version or number > latest_version[pack_id][1]:
                latest_version[pack_id] = (version_id, number)
            if pack_id not in first_version_at or created < first_version_at[pack_id]:
                first_version_at[pack_id] = created
            if is_approved:
                approved.add(pack_id)

        stories_by_version: Dict[UUID, List[str]] = defaultdict(list)
        latest_ids = [v[0] for v in latest_version.values()]
        if latest_ids:
            story_rows = await self._rows(
                select(Story.id, Story.pack_version_id)
                .where(Story.pack_version_id.in_(latest_ids))
                .where(Story.deleted_at.is_(None)),
                "latest stories",
            )
            for story_id, version_id in story_rows:
                stories_by_version[version_id].append(str(story_id))

        first_baseline_rows = await self._rows(
            select(Baseline.pack_id, func.min(Baseline.created_at))
            .where(Baseline.pack_id.in_(pack_ids))
            .group_by(Baseline.pack_id),
            "first baselines",
        )
        first_baseline_at = dict(first_baseline_rows)

        first_push_rows = await self._rows(
            select(StoryExport.pack_id, func.min(StoryExport.last_synced_at))
            .where(StoryExport.pack_id.in_(pack_ids))
            .where(StoryExport.last_synced_at.is_not(None))
            .group_by(StoryExport.pack_id),
            "first pushes",
        )
        first_push_at = dict(first_push_rows)

        packs = []
        for pack_id, name, project_id, project_name in pack_rows:
            version = latest_version.get(pack_id)
            packs.append(
                PackRow(
                    id=str(pack_id),
                    name=name,
                    project_id=str(project_id),
                    project_name=project_name,
                    latest_story_ids=stories_by_version.get(version[0], []) if version else [],
                    first_version_at=first_version_at.get(pack_id),
                    first_baseline_at=first_baseline_at.get(pack_id),
                    first_push_at=first_push_at.get(pack_id),
                    approved=pack_id in approved,
                )
            )
        return packs
