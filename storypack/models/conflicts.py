"""Conflict detection models."""

from typing import Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, Field


class CandidatePair(BaseModel):
    """Topically close chunk pair returned by similarity search."""

    chunk_a_id: UUID
    chunk_b_id: UUID
    content_a: str
    content_b: str
    similarity: float
    source_a_name: Optional[str] = None
    source_b_name: Optional[str] = None

    def canonical(self) -> "CandidatePair":
        """Return the pair with ``chunk_a_id < chunk_b_id``, swapping payloads with the ids."""
        if str(self.chunk_a_id) <= str(self.chunk_b_id):
            return self
        return CandidatePair(
            chunk_a_id=self.chunk_b_id,
            chunk_b_id=self.chunk_a_id,
            content_a=self.content_b,
            content_b=self.content_a,
            similarity=self.similarity,
            source_a_name=self.source_b_name,
            source_b_name=self.source_a_name,
        )

    @property
    def key(self) -> Tuple[str, str]:
        a, b = str(self.chunk_a_id), str(self.chunk_b_id)
        return (a, b) if a <= b else (b, a)


class ConflictVerdict(BaseModel):
    """Contradiction judge verdict for one pair index."""

    pair_index: int
    contradicts: bool
    summary: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)
