"""Structured outcomes returned by judges and pipeline stages."""

from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class JudgeErrorKind(str, Enum):
    TIMEOUT = "timeout"
    API_ERROR = "api_error"
    UNPARSEABLE = "unparseable"


class JudgeOutcome(BaseModel, Generic[T]):
    """Result of one judge call: ``{success, data}`` or ``{success: False, error_kind}``."""

    success: bool
    data: Optional[T] = None
    error_kind: Optional[JudgeErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> "JudgeOutcome[T]":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error_kind: JudgeErrorKind, message: Optional[str] = None) -> "JudgeOutcome[T]":
        return cls(success=False, error_kind=error_kind, message=message)


class StageStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class StageErrorKind(str, Enum):
    VALIDATION = "validation"
    COLLABORATOR_UNAVAILABLE = "collaborator_unavailable"
    JUDGE_FAILURE = "judge_failure"


class StageError(BaseModel):
    kind: StageErrorKind
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)


class StageOutcome(BaseModel):
    """What a stage reports back to the job layer.

    ``partial`` means some batches failed but earlier work was kept;
    ``failed`` means nothing useful was produced and the whole invocation
    may be retried.
    """

    stage: str
    status: StageStatus = StageStatus.COMPLETED
    processed: int = 0
    created: int = 0
    skipped: int = 0
    errors: List[StageError] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)

    def record_error(self, kind: StageErrorKind, message: str, **context: Any) -> None:
        self.errors.append(StageError(kind=kind, message=message, context=context))

    def finalize(self, attempted_batches: int, failed_batches: int) -> "StageOutcome":
        """Set ``status`` from batch counts."""
        if failed_batches == 0:
            self.status = StageStatus.COMPLETED
        elif failed_batches >= attempted_batches:
            self.status = StageStatus.FAILED
        else:
            self.status = StageStatus.PARTIAL
        return self
