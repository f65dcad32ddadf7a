"""Duplicate story detector.

Compares every pair of stories in a version. With an embedder, similarity
is the cosine of the story embeddings; without one, it is the MinHash
estimate of the Jaccard similarity of the stories' word sets. Pairs whose
similarity exceeds the threshold are reported, never merged.
"""

from typing import Awaitable, Callable, List, Optional, Sequence

import numpy as np
from datasketch import MinHash

from storypack.models.quality import DuplicatePair, StoryInput
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)

Embedder = Callable[[List[str]], Awaitable[List[List[float]]]]


class DuplicateDetector:
    """Detector for near-duplicate stories within one pack version."""

    def __init__(
        self,
        similarity_threshold: float = 0.9,
        num_perm: int = 128,
        embedder: Optional[Embedder] = None,
    ):
        """Initialize duplicate detector.

        Args:
            similarity_threshold: Similarity (0.0 to 1.0) that two stories
                must exceed to be reported
            num_perm: Number of permutations for MinHash (higher = more accurate)
            embedder: Optional async callable returning one vector per text
        """
        self.similarity_threshold = similarity_threshold
        self.num_perm = num_perm
        self.embedder = embedder

    async def find_pairs(self, stories: Sequence[StoryInput]) -> List[DuplicatePair]:
        """Return every story pair whose similarity exceeds the threshold."""
        if len(stories) < 2:
            return []

        texts = [story.full_text for story in stories]
        if self.embedder is not None:
            matrix = self._cosine_matrix(await self.embedder(texts))
            similarity = lambda i, j: float(matrix[i, j])
        else:
            hashes = [self._create_minhash(text) for text in texts]
            similarity = lambda i, j: float(hashes[i].jaccard(hashes[j]))

        pairs: List[DuplicatePair] = []
        for i in range(len(stories)):
            for j in range(i + 1, len(stories)):
                score = similarity(i, j)
                if score > self.similarity_threshold:
                    pairs.append(
                        DuplicatePair(story_index_a=i, story_index_b=j, similarity=round(score, 3))
                    )

        if pairs:
            LOGGER.info(
                f"Found {len(pairs)} near-duplicate story pairs",
                extra={"threshold": self.similarity_threshold},
            )
        return pairs

    @staticmethod
    def _cosine_matrix(vectors: List[List[float]]) -> np.ndarray:
        matrix = np.asarray(vectors, dtype=float)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        normalized = matrix / norms
        return normalized @ normalized.T

    def _create_minhash(self, text: str) -> MinHash:
        minhash = MinHash(num_perm=self.num_perm)

        # Normalize: lowercase, remove extra whitespace
        for word in text.lower().split():
            minhash.update(word.encode("utf-8"))

        return minhash
