"""Baseline snapshot and diff models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class PackState(str, Enum):
    DRAFTING = "drafting"
    BASELINED = "baselined"
    DIVERGED = "diverged"


class SnapshotCriterion(BaseModel):
    id: str
    given: str = ""
    when: str = ""
    then: str = ""


class SnapshotStory(BaseModel):
    id: str
    sort_order: int = 0
    persona: str = ""
    want: str = ""
    so_that: str = ""
    acceptance_criteria: List[SnapshotCriterion] = Field(default_factory=list)


class SnapshotEvidenceLink(BaseModel):
    entity_type: str
    entity_id: str
    chunk_id: str
    confidence: str


class SnapshotQAFlag(BaseModel):
    entity_type: str
    entity_id: str
    rule_code: str
    severity: str
    message: str = ""


class BaselineSnapshot(BaseModel):
    """Denormalised copy of a pack version at snapshot time.

    Later edits to the live pack never alter a stored snapshot.
    """

    pack_version_id: str
    version_number: int
    stories: List[SnapshotStory] = Field(default_factory=list)
    evidence_links: List[SnapshotEvidenceLink] = Field(default_factory=list)
    qa_flags: List[SnapshotQAFlag] = Field(default_factory=list)
    source_ids: List[str] = Field(default_factory=list)
    summary: Optional[str] = None
    health_score: Optional[int] = None


class FieldChange(BaseModel):
    field: str
    before: str
    after: str


class ModifiedStory(BaseModel):
    story: SnapshotStory
    changes: List[FieldChange]


class BaselineDiff(BaseModel):
    added_stories: List[SnapshotStory] = Field(default_factory=list)
    removed_stories: List[SnapshotStory] = Field(default_factory=list)
    modified_stories: List[ModifiedStory] = Field(default_factory=list)
    added_evidence_links: int = 0
    removed_evidence_links: int = 0
