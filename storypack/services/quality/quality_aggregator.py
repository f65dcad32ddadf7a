"""Quality aggregation for a generated pack version.

Six independent sections are computed: self-review, evidence coverage,
coherence, assumptions, QA pass rate and duplicates. The two judge-backed
sections and duplicate detection run concurrently; a failure in any of them
marks only that section ``degraded`` and the report is still returned.
"""

import asyncio
import math
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from storypack.core.config import QualitySettings
from storypack.core.exceptions import NotFoundError
from storypack.models.evidence import ConfidenceTier, EvidenceEntityType, is_supporting
from storypack.models.quality import (
    AssumptionsSection,
    AssumptionStatus,
    CoherenceSection,
    ConfidenceLevel,
    CoverageStatus,
    CriterionInput,
    DuplicatesSection,
    EvidenceCoverageSection,
    QAFlagInput,
    QAPassRateSection,
    QualityInputs,
    QualityReport,
    SectionState,
    SelfReviewSection,
    SourceTopic,
    StoryInput,
)
from storypack.repositories.pack_repository import PackRepository, live_criteria, live_stories
from storypack.services.judges.review_judges import CoherenceJudge, SelfReviewJudge
from storypack.services.quality.duplicate_detector import DuplicateDetector
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)


def percent(part: int, whole: int) -> int:
    """Integer percentage rounded half up; 0 when ``whole`` is 0."""
    if whole <= 0:
        return 0
    return int(math.floor(100.0 * part / whole + 0.5))


def confidence_level(score: int) -> ConfidenceLevel:
    if score >= 80:
        return ConfidenceLevel.HIGH
    if score >= 50:
        return ConfidenceLevel.MODERATE
    return ConfidenceLevel.LOW


def coverage_status(percentage: int) -> CoverageStatus:
    if percentage >= 80:
        return CoverageStatus.STRONG
    if percentage >= 50:
        return CoverageStatus.MODERATE
    return CoverageStatus.WEAK


def assumption_status(percentage: int) -> AssumptionStatus:
    if percentage < 10:
        return AssumptionStatus.LOW
    if percentage <= 30:
        return AssumptionStatus.MODERATE
    return AssumptionStatus.HIGH


def compute_evidence_coverage(
    criterion_ids: Sequence[str], criterion_link_tiers: Dict[str, List[str]]
) -> EvidenceCoverageSection:
    """Share of criteria with at least one non-assumption evidence link.

    Example:
        >>> tiers = {"a": ["direct"], "b": ["assumption"], "c": []}
        >>> compute_evidence_coverage(["a", "b", "c"], tiers).percentage
        33
    """
    total = len(criterion_ids)
    if total == 0:
        return EvidenceCoverageSection(
            state=SectionState.SKIPPED, percentage=0, status=CoverageStatus.WEAK, acs_without_evidence=0
        )

    covered = 0
    without_any = 0
    for criterion_id in criterion_ids:
        tiers = criterion_link_tiers.get(criterion_id) or []
        if not tiers:
            without_any += 1
        if any(is_supporting(tier) for tier in tiers):
            covered += 1

    percentage = percent(covered, total)
    return EvidenceCoverageSection(
        percentage=percentage,
        status=coverage_status(percentage),
        acs_without_evidence=without_any,
    )


def compute_assumptions(link_tiers: Sequence[str]) -> AssumptionsSection:
    """Share of all evidence links in the version that are assumptions."""
    if not link_tiers:
        return AssumptionsSection(state=SectionState.SKIPPED)

    count = sum(1 for tier in link_tiers if tier == ConfidenceTier.ASSUMPTION.value)
    percentage = percent(count, len(link_tiers))
    return AssumptionsSection(percentage=percentage, status=assumption_status(percentage), count=count)


def compute_qa_pass_rate(flags: Sequence[QAFlagInput]) -> QAPassRateSection:
    """Share of QA flags that are not errors; 100 when there are no flags."""
    if not flags:
        return QAPassRateSection(state=SectionState.SKIPPED, percentage=100)

    errors = sum(1 for flag in flags if flag.severity.lower() == "error")
    warnings = sum(1 for flag in flags if flag.severity.lower() == "warning")
    return QAPassRateSection(
        percentage=percent(len(flags) - errors, len(flags)),
        total_flags=len(flags),
        error_flags=errors,
        warning_flags=warnings,
    )


class QualityAggregator:
    """Builds a ``QualityReport`` for one pack version."""

    def __init__(
        self,
        self_review_judge: SelfReviewJudge,
        coherence_judge: CoherenceJudge,
        duplicate_detector: DuplicateDetector,
        settings: QualitySettings,
        pack_repository: Optional[PackRepository] = None,
    ):
        self.self_review_judge = self_review_judge
        self.coherence_judge = coherence_judge
        self.duplicate_detector = duplicate_detector
        self.settings = settings
        self.pack_repository = pack_repository

    async def aggregate(self, inputs: QualityInputs) -> QualityReport:
        """Compute every section; never raises on a judge failure."""
        criterion_ids = [ac.id for story in inputs.stories for ac in story.acceptance_criteria]

        self_review, coherence, duplicates = await asyncio.gather(
            self._self_review(inputs),
            self._coherence(inputs),
            self._duplicates(inputs.stories),
        )
        section, confidence_score = self_review

        report = QualityReport(
            confidence_score=confidence_score,
            confidence_level=confidence_level(confidence_score),
            self_review=section,
            evidence_coverage=compute_evidence_coverage(criterion_ids, inputs.criterion_link_tiers),
            coherence=coherence,
            assumptions=compute_assumptions(inputs.all_link_tiers),
            qa_pass_rate=compute_qa_pass_rate(inputs.qa_flags),
            duplicates=duplicates,
        )

        LOGGER.info(
            f"Quality report for version {inputs.pack_version_id}: "
            f"confidence={report.confidence_score} coverage={report.evidence_coverage.percentage}",
            extra={"degraded_sections": report.degraded_sections},
        )
        return report

    async def _self_review(self, inputs: QualityInputs):
        default_score = self.settings.default_confidence_score
        if not self.settings.self_review_enabled or not inputs.stories:
            return SelfReviewSection(state=SectionState.SKIPPED), default_score

        judged = await self.self_review_judge.review(inputs.stories, inputs.source_context)
        if not judged.success:
            return SelfReviewSection(state=SectionState.DEGRADED), default_score

        verdict = judged.data
        section = SelfReviewSection(
            overall_assessment=verdict.overall_assessment,
            issue_count=len(verdict.issues),
            issues=verdict.issues,
            missed_requirements=verdict.missed_requirements,
        )
        score = verdict.confidence_score if verdict.confidence_score is not None else default_score
        return section, score

    async def _coherence(self, inputs: QualityInputs) -> CoherenceSection:
        if not self.settings.coherence_enabled or not inputs.topics or not inputs.stories:
            return CoherenceSection(state=SectionState.SKIPPED, is_coherent=None)

        judged = await self.coherence_judge.check(inputs.topics, inputs.stories)
        if not judged.success:
            return CoherenceSection(state=SectionState.DEGRADED, is_coherent=None)

        return CoherenceSection(
            is_coherent=judged.data.is_coherent,
            off_topic_stories=judged.data.off_topic_stories,
        )

    async def _duplicates(self, stories: Sequence[StoryInput]) -> DuplicatesSection:
        if len(stories) < 2:
            return DuplicatesSection(state=SectionState.SKIPPED)
        try:
            pairs = await self.duplicate_detector.find_pairs(stories)
        except Exception as e:
            # Embedder is an external collaborator; degrade the section only
            LOGGER.warning(f"Duplicate detection failed: {e}", exc_info=True)
            return DuplicatesSection(state=SectionState.DEGRADED)
        return DuplicatesSection(pairs=pairs)

    async def assess_version(
        self,
        pack_version_id: UUID,
        topics: Optional[List[SourceTopic]] = None,
        persist: bool = False,
    ) -> QualityReport:
        """Load a version, aggregate its report and optionally store it on the version.

        Raises:
            NotFoundError: If the version does not exist
        """
        inputs = await self.load_inputs(pack_version_id, topics or [])
        report = await self.aggregate(inputs)
        if persist:
            await self.pack_repository.save_quality_report(pack_version_id, report.model_dump(mode="json"))
        return report

    async def load_inputs(self, pack_version_id: UUID, topics: List[SourceTopic]) -> QualityInputs:
        version = await self.pack_repository.get_version(pack_version_id)
        if version is None:
            raise NotFoundError(f"Pack version {pack_version_id} not found")

        stories = live_stories(version)
        criteria_by_story = {story.id: live_criteria(story) for story in stories}
        criterion_ids = [ac.id for acs in criteria_by_story.values() for ac in acs]

        links = await self.pack_repository.get_evidence_links([s.id for s in stories], criterion_ids)
        chunks = await self.pack_repository.get_chunks(list({link.source_chunk_id for link in links}))
        chunk_text = {chunk.id: chunk.content for chunk in chunks}
        flags = await self.pack_repository.get_qa_flags(pack_version_id)

        criterion_link_tiers: Dict[str, List[str]] = {str(ac_id): [] for ac_id in criterion_ids}
        evidence_by_entity: Dict[UUID, List[str]] = {}
        for link in links:
            if link.entity_type == EvidenceEntityType.ACCEPTANCE_CRITERION.value:
                criterion_link_tiers.setdefault(str(link.entity_id), []).append(link.confidence)
            if link.source_chunk_id in chunk_text:
                evidence_by_entity.setdefault(link.entity_id, []).append(
                    f"[chunk:{link.source_chunk_id}] {chunk_text[link.source_chunk_id]}"
                )

        story_inputs = []
        for story in stories:
            acs = criteria_by_story[story.id]
            evidence = list(evidence_by_entity.get(story.id, []))
            for ac in acs:
                evidence.extend(evidence_by_entity.get(ac.id, []))
            story_inputs.append(
                StoryInput(
                    id=str(story.id),
                    persona=story.persona,
                    want=story.want,
                    so_that=story.so_that,
                    acceptance_criteria=[
                        CriterionInput(id=str(ac.id), given=ac.given, when=ac.when, then=ac.then)
                        for ac in acs
                    ],
                    evidence_text=evidence,
                )
            )

        return QualityInputs(
            pack_version_id=str(pack_version_id),
            stories=story_inputs,
            criterion_link_tiers=criterion_link_tiers,
            all_link_tiers=[link.confidence for link in links],
            qa_flags=[
                QAFlagInput(rule_id=flag.rule_code, severity=flag.severity, story_id=str(flag.entity_id))
                for flag in flags
            ],
            topics=topics,
            source_context="\n\n".join(f"[chunk:{cid}]\n{text}" for cid, text in chunk_text.items()),
        )
