"""Pack health models."""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    STALE = "stale"
    AT_RISK = "at_risk"
    OUTDATED = "outdated"


# Worse statuses rank higher
HEALTH_STATUS_SEVERITY: Dict[str, int] = {
    HealthStatus.HEALTHY.value: 0,
    HealthStatus.STALE.value: 1,
    HealthStatus.AT_RISK.value: 2,
    HealthStatus.OUTDATED.value: 3,
}


class HealthInputs(BaseModel):
    """Raw signals for one pack; any field may be missing."""

    evidence_coverage: Optional[float] = Field(None, ge=0, le=100)
    qa_pass_rate: Optional[float] = Field(None, ge=0, le=100)
    last_source_refresh: Optional[datetime] = None
    has_baseline: bool = False
    diverged_from_baseline: bool = False


class HealthResult(BaseModel):
    score: int = Field(..., ge=0, le=100)
    status: HealthStatus
    factors: Dict[str, int] = Field(default_factory=dict)
    fallback: bool = False
    skipped: bool = False
    persisted: bool = False
    previous_status: Optional[HealthStatus] = None

    @property
    def worsened(self) -> bool:
        """True when the status moved to a worse tier than the previous check."""
        if self.previous_status is None or self.skipped:
            return False
        return HEALTH_STATUS_SEVERITY[self.status.value] > HEALTH_STATUS_SEVERITY[self.previous_status.value]
