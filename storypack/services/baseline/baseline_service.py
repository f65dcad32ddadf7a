"""Baseline snapshots and pack divergence state."""

from typing import Dict, List, Optional
from uuid import UUID

from storypack.core.config import BaselineSettings
from storypack.core.exceptions import ConstraintViolation, NotFoundError, ValidationError
from storypack.database.models import Baseline, Pack, PackVersion
from storypack.models.baseline import (
    BaselineDiff,
    BaselineSnapshot,
    FieldChange,
    ModifiedStory,
    PackState,
    SnapshotCriterion,
    SnapshotEvidenceLink,
    SnapshotQAFlag,
    SnapshotStory,
)
from storypack.repositories.baseline_repository import BaselineRepository
from storypack.repositories.pack_repository import PackRepository, live_criteria, live_stories
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Concurrent creators race on (pack_id, version_number); one recompute is enough
MAX_NUMBER_ATTEMPTS = 2


def pack_state(pack: Pack) -> PackState:
    """Current position of ``pack`` in the drafting / baselined / diverged cycle."""
    if pack.last_baseline_id is None:
        return PackState.DRAFTING
    if pack.diverged_from_baseline:
        return PackState.DIVERGED
    return PackState.BASELINED


def format_label(template: str, version_number: int) -> str:
    """
    >>> format_label("Baseline v{N}", 3)
    'Baseline v3'
    """
    return template.format(N=version_number)


def _criteria_text(story: SnapshotStory) -> str:
    return " | ".join(f"{ac.given} / {ac.when} / {ac.then}" for ac in story.acceptance_criteria)


def diff_snapshots(before: BaselineSnapshot, after: BaselineSnapshot) -> BaselineDiff:
    """Stories added, removed or edited between two snapshots, plus evidence churn.

    Evidence links are compared by ``(entity_id, chunk_id)``.
    """
    before_stories: Dict[str, SnapshotStory] = {s.id: s for s in before.stories}
    after_ids = {s.id for s in after.stories}

    diff = BaselineDiff()
    for story in after.stories:
        previous = before_stories.get(story.id)
        if previous is None:
            diff.added_stories.append(story)
            continue

        changes: List[FieldChange] = []
        for field in ("persona", "want", "so_that"):
            old, new = getattr(previous, field), getattr(story, field)
            if old != new:
                changes.append(FieldChange(field=field, before=old, after=new))
        if previous.acceptance_criteria != story.acceptance_criteria:
            changes.append(
                FieldChange(
                    field="acceptance_criteria",
                    before=_criteria_text(previous)[:100],
                    after=_criteria_text(story)[:100],
                )
            )
        if changes:
            diff.modified_stories.append(ModifiedStory(story=story, changes=changes))

    diff.removed_stories = [s for s in before.stories if s.id not in after_ids]

    before_links = {(link.entity_id, link.chunk_id) for link in before.evidence_links}
    after_links = {(link.entity_id, link.chunk_id) for link in after.evidence_links}
    diff.added_evidence_links = len(after_links - before_links)
    diff.removed_evidence_links = len(before_links - after_links)
    return diff


class BaselineService:
    """Creates and compares baselines; owns the meaning of the divergence flag."""

    def __init__(
        self,
        pack_repository: PackRepository,
        baseline_repository: BaselineRepository,
        settings: BaselineSettings,
    ):
        self.pack_repository = pack_repository
        self.baseline_repository = baseline_repository
        self.settings = settings

    async def create_baseline(
        self, pack_id: UUID, created_by: str, note: Optional[str] = None
    ) -> Baseline:
        """Snapshot the latest approved version of a pack.

        The baseline row and the pack's ``last_baseline_id`` /
        ``diverged_from_baseline`` update commit together.

        Raises:
            NotFoundError: If the pack does not exist
            ValidationError: If the pack has no approved version
            ConstraintViolation: If the version number stays contended after a retry
        """
        pack = await self.pack_repository.get_by_id(pack_id)
        if pack is None:
            raise NotFoundError(f"Pack {pack_id} not found")

        version = await self.pack_repository.get_latest_version(pack_id, approved_only=True)
        if version is None:
            raise ValidationError(f"Pack {pack_id} has no approved version to baseline")

        snapshot = await self.build_snapshot(version, pack.health_score)
        # A rollback on a lost number race expires loaded rows
        workspace_id, version_id = pack.workspace_id, version.id

        for attempt in range(1, MAX_NUMBER_ATTEMPTS + 1):
            version_number = await self.baseline_repository.max_version_number(pack_id) + 1
            try:
                baseline = await self.baseline_repository.create_and_point_pack(
                    workspace_id=workspace_id,
                    pack_id=pack_id,
                    pack_version_id=version_id,
                    version_number=version_number,
                    version_label=format_label(self.settings.label_template, version_number),
                    snapshot_data=snapshot.model_dump(mode="json"),
                    created_by=created_by,
                    note=note,
                )
            except ConstraintViolation:
                if attempt == MAX_NUMBER_ATTEMPTS:
                    raise
                continue

            LOGGER.info(
                f"Created {baseline.version_label} for pack {pack_id}",
                extra={"pack_version_id": str(version_id), "stories": len(snapshot.stories)},
            )
            return baseline

    async def build_snapshot(self, version: PackVersion, health_score: Optional[int]) -> BaselineSnapshot:
        stories = live_stories(version)
        criteria = {story.id: live_criteria(story) for story in stories}

        links = await self.pack_repository.get_evidence_links(
            [s.id for s in stories], [ac.id for acs in criteria.values() for ac in acs]
        )
        flags = await self.pack_repository.get_qa_flags(version.id)

        return BaselineSnapshot(
            pack_version_id=str(version.id),
            version_number=version.version_number,
            stories=[
                SnapshotStory(
                    id=str(story.id),
                    sort_order=story.sort_order,
                    persona=story.persona,
                    want=story.want,
                    so_that=story.so_that or "",
                    acceptance_criteria=[
                        SnapshotCriterion(id=str(ac.id), given=ac.given, when=ac.when, then=ac.then)
                        for ac in criteria[story.id]
                    ],
                )
                for story in stories
            ],
            evidence_links=[
                SnapshotEvidenceLink(
                    entity_type=link.entity_type,
                    entity_id=str(link.entity_id),
                    chunk_id=str(link.source_chunk_id),
                    confidence=link.confidence,
                )
                for link in links
            ],
            qa_flags=[
                SnapshotQAFlag(
                    entity_type=flag.entity_type,
                    entity_id=str(flag.entity_id),
                    rule_code=flag.rule_code,
                    severity=flag.severity,
                    message=flag.message,
                )
                for flag in flags
            ],
            source_ids=[str(sid) for sid in (version.source_ids or [])],
            summary=version.summary,
            health_score=health_score,
        )

    async def compare_baselines(self, baseline_a_id: UUID, baseline_b_id: UUID) -> BaselineDiff:
        """Diff two baselines; ``a`` is treated as the earlier one.

        Raises:
            NotFoundError: If either baseline does not exist
        """
        a = await self.baseline_repository.get_by_id(baseline_a_id)
        b = await self.baseline_repository.get_by_id(baseline_b_id)
        if a is None or b is None:
            raise NotFoundError("Baseline not found")

        return diff_snapshots(
            BaselineSnapshot.model_validate(a.snapshot_data),
            BaselineSnapshot.model_validate(b.snapshot_data),
        )

    async def mark_diverged(self, pack_id: UUID) -> bool:
        """Called by editing collaborators after any story or criterion edit."""
        diverged = await self.pack_repository.mark_diverged(pack_id)
        if diverged:
            LOGGER.info(f"Pack {pack_id} diverged from its last baseline")
        return diverged
