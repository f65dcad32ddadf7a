"""Traceability graph node/edge models.

Nodes are a tagged union discriminated on ``kind``; every variant has a
fixed payload shape. Edges share one model discriminated by ``edge_type``.
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

TraceConfidence = Literal["direct", "inferred", "assumption"]
EdgeType = Literal["source-to-story", "story-to-ac", "ac-to-evidence", "evidence-to-chunk"]


class SourceNode(BaseModel):
    kind: Literal["source"] = "source"
    id: str
    name: str
    source_type: str
    chunk_count: int = 0
    file_size: str = "n/a"


class StoryNode(BaseModel):
    kind: Literal["story"] = "story"
    id: str
    story_index: int
    persona: str
    want: str
    ac_count: int = 0
    ac_with_evidence_count: int = 0
    evidence_coverage: int = 0
    quality_score: int = 0


class AcceptanceCriterionNode(BaseModel):
    kind: Literal["ac"] = "ac"
    id: str
    criterion_index: int
    given: str
    when: str
    then: str
    evidence_count: int = 0
    strongest_confidence: Literal["direct", "inferred", "assumption", "none"] = "none"


class EvidenceNode(BaseModel):
    kind: Literal["evidence"] = "evidence"
    id: str
    confidence: TraceConfidence
    snippet: str
    source_name: str
    source_id: str


class ChunkNode(BaseModel):
    kind: Literal["chunk"] = "chunk"
    id: str
    snippet: str
    source_name: str
    source_id: str
    source_type: str
    chunk_index: int
    chunk_count: Optional[int] = None


TraceNode = Annotated[
    Union[SourceNode, StoryNode, AcceptanceCriterionNode, EvidenceNode, ChunkNode],
    Field(discriminator="kind"),
]


class TraceEdge(BaseModel):
    id: str
    source: str
    target: str
    edge_type: EdgeType
    confidence: Optional[TraceConfidence] = None
    label: Optional[str] = None


class TraceGraphStats(BaseModel):
    sources: int = 0
    stories: int = 0
    acceptance_criteria: int = 0
    evidence_links: int = 0
    chunks: int = 0
    coverage: int = 0


class TraceabilityGraph(BaseModel):
    """Request-scoped projection of one pack version; never persisted."""

    pack_id: str
    pack_name: str
    pack_version_id: str
    version_number: int
    generated_at: datetime
    nodes: List[TraceNode] = Field(default_factory=list)
    edges: List[TraceEdge] = Field(default_factory=list)
    stats: TraceGraphStats = Field(default_factory=TraceGraphStats)


# Builder inputs

class SourceData(BaseModel):
    id: str
    name: str
    source_type: str = "document"
    chunk_count: int = 0
    file_size_bytes: Optional[int] = None


class ChunkData(BaseModel):
    id: str
    source_id: str
    chunk_index: int
    content: str


class LinkData(BaseModel):
    id: str
    chunk_id: str
    confidence: TraceConfidence


class CriterionData(BaseModel):
    id: str
    given: str = ""
    when: str = ""
    then: str = ""
    sort_order: int = 0
    deleted: bool = False
    evidence_links: List[LinkData] = Field(default_factory=list)


class StoryData(BaseModel):
    id: str
    persona: str = ""
    want: str = ""
    sort_order: int = 0
    deleted: bool = False
    acceptance_criteria: List[CriterionData] = Field(default_factory=list)
    evidence_links: List[LinkData] = Field(default_factory=list)
    qa_flag_severities: List[str] = Field(default_factory=list)


class PackVersionData(BaseModel):
    """Everything the graph builder reads for one version, loaded up front."""

    pack_id: str
    pack_name: str
    pack_version_id: str
    version_number: int
    source_ids: List[str] = Field(default_factory=list)
    sources: List[SourceData] = Field(default_factory=list)
    stories: List[StoryData] = Field(default_factory=list)
    chunks: List[ChunkData] = Field(default_factory=list)
