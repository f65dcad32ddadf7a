"""Unit tests for DuplicateDetector.

Tests MinHash and embedding based near-duplicate detection for stories.
"""

import pytest

from storypack.models.quality import CriterionInput, StoryInput
from storypack.services.quality.duplicate_detector import DuplicateDetector


class TestDuplicateDetectorMinHash:
    """Word-set similarity without an embedder."""

    @pytest.fixture
    def detector(self):
        """Create detector instance with a lenient threshold."""
        return DuplicateDetector(similarity_threshold=0.8, num_perm=128)

    def _story(self, story_id: str, want: str) -> StoryInput:
        return StoryInput(
            id=story_id,
            persona="project manager",
            want=want,
            acceptance_criteria=[CriterionInput(id=f"{story_id}-ac", given="a plan", when="saved", then="listed")],
        )

    @pytest.mark.asyncio
    async def test_identical_stories_are_paired(self, detector):
        """Test that identical text is reported with similarity 1."""
        stories = [
            self._story("s1", "export the weekly status report"),
            self._story("s2", "export the weekly status report"),
        ]

        pairs = await detector.find_pairs(stories)

        assert len(pairs) == 1
        assert (pairs[0].story_index_a, pairs[0].story_index_b) == (0, 1)
        assert pairs[0].similarity == 1.0

    @pytest.mark.asyncio
    async def test_different_stories_not_paired(self, detector):
        """Test that unrelated stories are not reported."""
        stories = [
            StoryInput(id="s1", persona="admin", want="rotate api credentials every quarter"),
            StoryInput(id="s2", persona="customer", want="browse seasonal catalogue offers quickly"),
        ]

        assert await detector.find_pairs(stories) == []

    @pytest.mark.asyncio
    async def test_single_story(self, detector):
        assert await detector.find_pairs([self._story("s1", "anything")]) == []


class TestDuplicateDetectorEmbeddings:
    """Cosine similarity with an injected embedder."""

    @pytest.mark.asyncio
    async def test_cosine_threshold(self):
        vectors = {
            "a": [1.0, 0.0],
            "b": [0.99, 0.05],
            "c": [0.0, 1.0],
        }

        async def embedder(texts):
            return [vectors[text.split()[-1]] for text in texts]

        detector = DuplicateDetector(similarity_threshold=0.9, embedder=embedder)
        stories = [StoryInput(id=key, persona="user", want=f"do {key}") for key in ("a", "b", "c")]

        pairs = await detector.find_pairs(stories)

        assert [(p.story_index_a, p.story_index_b) for p in pairs] == [(0, 1)]
        assert pairs[0].similarity > 0.99

    @pytest.mark.asyncio
    async def test_zero_vector_does_not_divide_by_zero(self):
        async def embedder(texts):
            return [[0.0, 0.0] for _ in texts]

        detector = DuplicateDetector(similarity_threshold=0.9, embedder=embedder)
        stories = [StoryInput(id="a", want="x"), StoryInput(id="b", want="y")]

        assert await detector.find_pairs(stories) == []


class TestDuplicateThreshold:
    """Only similarity strictly above the threshold is reported."""

    @pytest.mark.asyncio
    async def test_cosine_equal_to_threshold_not_reported(self):
        async def embedder(texts):
            return [[1.0, 0.0] for _ in texts]

        detector = DuplicateDetector(similarity_threshold=1.0, embedder=embedder)
        stories = [StoryInput(id="a", want="x"), StoryInput(id="b", want="y")]

        assert await detector.find_pairs(stories) == []

    @pytest.mark.asyncio
    async def test_minhash_equal_to_threshold_not_reported(self):
        detector = DuplicateDetector(similarity_threshold=1.0, num_perm=64)
        stories = [
            StoryInput(id="s1", persona="admin", want="export the weekly status report"),
            StoryInput(id="s2", persona="admin", want="export the weekly status report"),
        ]

        assert await detector.find_pairs(stories) == []
