"""Shared evidence vocabulary: confidence tiers, classification tags and links.

The confidence ordering is an explicit lookup table rather than enum
declaration order, so reordering the enum never changes how tiers rank.
"""

from enum import Enum
from typing import Dict, Iterable, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ConfidenceTier(str, Enum):
    """How strongly a chunk supports a generated claim."""

    DIRECT = "direct"
    INFERRED = "inferred"
    ASSUMPTION = "assumption"


NO_CONFIDENCE = "none"

TRACE_CONFIDENCE_PRIORITY: Dict[str, int] = {
    NO_CONFIDENCE: 0,
    ConfidenceTier.ASSUMPTION.value: 1,
    ConfidenceTier.INFERRED.value: 2,
    ConfidenceTier.DIRECT.value: 3,
}


def confidence_priority(tier: Optional[str]) -> int:
    """Return the rank of ``tier``; unknown or missing tiers rank as ``none``."""
    if tier is None:
        return TRACE_CONFIDENCE_PRIORITY[NO_CONFIDENCE]
    value = tier.value if isinstance(tier, ConfidenceTier) else str(tier)
    return TRACE_CONFIDENCE_PRIORITY.get(value, TRACE_CONFIDENCE_PRIORITY[NO_CONFIDENCE])


def strongest_confidence(tiers: Iterable[Optional[str]]) -> str:
    """Highest-priority tier among ``tiers``, or ``"none"`` when empty.

    Example:
        >>> strongest_confidence(["assumption", "direct", "inferred"])
        'direct'
        >>> strongest_confidence([])
        'none'
    """
    best = NO_CONFIDENCE
    for tier in tiers:
        if confidence_priority(tier) > TRACE_CONFIDENCE_PRIORITY[best]:
            best = tier.value if isinstance(tier, ConfidenceTier) else str(tier)
    return best


def is_supporting(tier: Optional[str]) -> bool:
    """True when ``tier`` is backed by a chunk (anything above assumption)."""
    return confidence_priority(tier) > TRACE_CONFIDENCE_PRIORITY[ConfidenceTier.ASSUMPTION.value]


class ClassificationTag(str, Enum):
    """Closed vocabulary the classification judge may assign to a chunk."""

    REQUIREMENT = "requirement"
    DECISION = "decision"
    COMMITMENT = "commitment"
    QUESTION = "question"
    CONTEXT = "context"
    CONSTRAINT = "constraint"
    NOISE = "noise"

    @classmethod
    def parse(cls, value) -> Optional["ClassificationTag"]:
        """Return the tag for ``value`` or None when it is outside the vocabulary."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class EvidenceEntityType(str, Enum):
    STORY = "story"
    ACCEPTANCE_CRITERION = "acceptance_criterion"


class EvolutionStatus(str, Enum):
    """Change of a link relative to the prior version of the same story."""

    NEW = "new"
    STRENGTHENED = "strengthened"
    CONTRADICTED = "contradicted"
    UNCHANGED = "unchanged"


class ChunkInput(BaseModel):
    """Chunk text handed to the classification judge."""

    id: UUID
    content: str


class ChunkClassification(BaseModel):
    """Classification verdict for a single chunk."""

    chunk_id: UUID
    tag: ClassificationTag
    confidence: float = Field(..., ge=0.0, le=1.0)
