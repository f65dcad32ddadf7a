"""Portfolio analytics inputs and metrics."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# Inputs, loaded read-only by the portfolio repository

class ProjectRow(BaseModel):
    id: str
    name: str
    first_source_at: Optional[datetime] = None


class PackRow(BaseModel):
    id: str
    name: str
    project_id: str
    project_name: str
    latest_story_ids: List[str] = Field(default_factory=list)
    first_version_at: Optional[datetime] = None
    first_baseline_at: Optional[datetime] = None
    first_push_at: Optional[datetime] = None
    approved: bool = False


class BaselineRow(BaseModel):
    pack_id: str
    project_name: str
    created_at: datetime


class ChangeRequestRow(BaseModel):
    status: str
    created_at: datetime


class EditEventRow(BaseModel):
    pack_id: str
    created_at: datetime


class QAFlagRow(BaseModel):
    entity_id: str
    rule_code: str
    created_at: datetime


class ConflictRow(BaseModel):
    project_id: str
    resolved: bool = False


class SourceRow(BaseModel):
    id: str
    updated_at: datetime


class PortfolioData(BaseModel):
    """Everything needed to compute workspace metrics in one pure pass."""

    workspace_id: str
    projects: List[ProjectRow] = Field(default_factory=list)
    packs: List[PackRow] = Field(default_factory=list)
    story_ids_with_evidence: List[str] = Field(default_factory=list)
    baselines: List[BaselineRow] = Field(default_factory=list)
    change_requests: List[ChangeRequestRow] = Field(default_factory=list)
    edit_events: List[EditEventRow] = Field(default_factory=list)
    qa_flags: List[QAFlagRow] = Field(default_factory=list)
    conflicts: List[ConflictRow] = Field(default_factory=list)
    sources: List[SourceRow] = Field(default_factory=list)


class DateRange(BaseModel):
    start: datetime
    end: datetime


# Outputs

class NamedCount(BaseModel):
    count: int = 0
    names: List[str] = Field(default_factory=list)


class CoverageMetrics(BaseModel):
    average_evidence_coverage: int = 0
    average_approval_coverage: int = 0
    projects_with_no_baseline: NamedCount = Field(default_factory=NamedCount)


class ChangeRequestVolume(BaseModel):
    total: int = 0
    approved: int = 0
    rejected: int = 0


class ChurnHotspot(BaseModel):
    pack_id: str
    pack_name: str
    project_name: str
    edit_count: int


class VolatilityMetrics(BaseModel):
    baseline_frequency: Dict[str, int] = Field(default_factory=dict)
    change_request_volume: ChangeRequestVolume = Field(default_factory=ChangeRequestVolume)
    churn_hotspots: List[ChurnHotspot] = Field(default_factory=list)


class CycleTimeMetrics(BaseModel):
    """Average durations in days; None when no pack has both endpoints."""

    avg_source_to_generation: Optional[int] = None
    avg_generation_to_baseline: Optional[int] = None
    avg_baseline_to_push: Optional[int] = None


class RuleCount(BaseModel):
    rule_code: str
    count: int


class MonthCount(BaseModel):
    month: str
    count: int


class QualityMetrics(BaseModel):
    qa_pass_rate: int = 100
    common_qa_failures: List[RuleCount] = Field(default_factory=list)
    ambiguous_word_trend: List[MonthCount] = Field(default_factory=list)


class LowCoveragePack(BaseModel):
    pack_id: str
    pack_name: str
    project_id: str
    project_name: str
    coverage: float


class RiskMetrics(BaseModel):
    unresolved_conflicts: Dict[str, int] = Field(default_factory=dict)
    low_coverage_packs: List[LowCoveragePack] = Field(default_factory=list)
    orphaned_stories: int = 0
    stale_sources: int = 0


class PortfolioMetrics(BaseModel):
    coverage: CoverageMetrics = Field(default_factory=CoverageMetrics)
    volatility: VolatilityMetrics = Field(default_factory=VolatilityMetrics)
    cycle_time: CycleTimeMetrics = Field(default_factory=CycleTimeMetrics)
    quality: QualityMetrics = Field(default_factory=QualityMetrics)
    risk_signals: RiskMetrics = Field(default_factory=RiskMetrics)
