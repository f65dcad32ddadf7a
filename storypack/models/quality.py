"""Quality report models for one pack version.

Each section carries a ``state`` marker so a consumer can tell a section
that was computed from one that was skipped (empty input) or degraded
(judge failure, neutral default applied).
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class SectionState(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    DEGRADED = "degraded"


class IssueType(str, Enum):
    HALLUCINATION = "hallucination"
    WEAK_EVIDENCE = "weak_evidence"
    UNTESTABLE = "untestable"
    OVERLOADED = "overloaded"


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class OverallAssessment(str, Enum):
    STRONG = "strong"
    ACCEPTABLE = "acceptable"
    WEAK = "weak"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"


class CoverageStatus(str, Enum):
    STRONG = "strong"
    MODERATE = "moderate"
    WEAK = "weak"


class AssumptionStatus(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


class ReviewIssue(BaseModel):
    """Self-review issue flattened with the index of the story it belongs to."""

    story_index: int
    ac_index: Optional[int] = None
    issue_type: IssueType
    description: str = ""
    suggested_fix: str = ""
    severity: IssueSeverity = IssueSeverity.WARNING


class MissedRequirement(BaseModel):
    topic: str
    source_evidence: str = ""
    suggestion: str = ""


class OffTopicStory(BaseModel):
    index: int
    reason: str = ""


class SelfReviewSection(BaseModel):
    state: SectionState = SectionState.OK
    overall_assessment: OverallAssessment = OverallAssessment.ACCEPTABLE
    issue_count: int = 0
    issues: List[ReviewIssue] = Field(default_factory=list)
    missed_requirements: List[MissedRequirement] = Field(default_factory=list)


class EvidenceCoverageSection(BaseModel):
    state: SectionState = SectionState.OK
    percentage: int = Field(0, ge=0, le=100)
    status: CoverageStatus = CoverageStatus.WEAK
    acs_without_evidence: int = 0


class CoherenceSection(BaseModel):
    """``is_coherent`` is None when the judge could not decide."""

    state: SectionState = SectionState.OK
    is_coherent: Optional[bool] = None
    off_topic_stories: List[OffTopicStory] = Field(default_factory=list)


class AssumptionsSection(BaseModel):
    state: SectionState = SectionState.OK
    percentage: int = Field(0, ge=0, le=100)
    status: AssumptionStatus = AssumptionStatus.LOW
    count: int = 0


class QAPassRateSection(BaseModel):
    state: SectionState = SectionState.OK
    percentage: int = Field(100, ge=0, le=100)
    total_flags: int = 0
    error_flags: int = 0
    warning_flags: int = 0


class DuplicatePair(BaseModel):
    story_index_a: int
    story_index_b: int
    similarity: float


class DuplicatesSection(BaseModel):
    state: SectionState = SectionState.OK
    pairs: List[DuplicatePair] = Field(default_factory=list)


class QualityReport(BaseModel):
    """Independent quality signals for one generated pack version.

    ``confidence_score`` is the self-review judge's own estimate; the other
    sections are banded separately and never folded into it.
    """

    confidence_score: int = Field(..., ge=0, le=100)
    confidence_level: ConfidenceLevel
    self_review: SelfReviewSection
    evidence_coverage: EvidenceCoverageSection
    coherence: CoherenceSection
    assumptions: AssumptionsSection
    qa_pass_rate: QAPassRateSection
    duplicates: DuplicatesSection

    @property
    def degraded_sections(self) -> List[str]:
        sections = {
            "self_review": self.self_review,
            "evidence_coverage": self.evidence_coverage,
            "coherence": self.coherence,
            "assumptions": self.assumptions,
            "qa_pass_rate": self.qa_pass_rate,
            "duplicates": self.duplicates,
        }
        return [name for name, section in sections.items() if section.state == SectionState.DEGRADED]


# Inputs

class QAFlagInput(BaseModel):
    """Flag from the rule checker, consumed read-only."""

    rule_id: str
    severity: str
    story_id: Optional[str] = None


class CriterionInput(BaseModel):
    id: str
    given: str = ""
    when: str = ""
    then: str = ""


class StoryInput(BaseModel):
    """A generated story with its criteria, as the judges see it."""

    id: str
    persona: str = ""
    want: str = ""
    so_that: str = ""
    title: Optional[str] = None
    acceptance_criteria: List[CriterionInput] = Field(default_factory=list)
    evidence_text: List[str] = Field(default_factory=list)

    @property
    def statement(self) -> str:
        return f"As a {self.persona}, I want to {self.want}"

    @property
    def full_text(self) -> str:
        parts = [self.statement, self.so_that]
        for ac in self.acceptance_criteria:
            parts.append(f"{ac.given} {ac.when} {ac.then}")
        return " ".join(p for p in parts if p)


class SourceTopic(BaseModel):
    label: str
    evidence_depth: int = 0


class QualityInputs(BaseModel):
    """Everything the aggregator reads for one version."""

    pack_version_id: str
    stories: List[StoryInput] = Field(default_factory=list)
    criterion_link_tiers: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Criterion id -> list of confidence tiers of its evidence links",
    )
    all_link_tiers: List[str] = Field(
        default_factory=list,
        description="Confidence tier of every evidence link in the version",
    )
    qa_flags: List[QAFlagInput] = Field(default_factory=list)
    topics: List[SourceTopic] = Field(default_factory=list)
    source_context: str = ""


# Judge verdicts

class SelfReviewVerdict(BaseModel):
    overall_assessment: OverallAssessment = OverallAssessment.ACCEPTABLE
    issues: List[ReviewIssue] = Field(default_factory=list)
    missed_requirements: List[MissedRequirement] = Field(default_factory=list)
    confidence_score: Optional[int] = Field(None, ge=0, le=100)


class CoherenceVerdict(BaseModel):
    is_coherent: bool
    off_topic_stories: List[OffTopicStory] = Field(default_factory=list)
