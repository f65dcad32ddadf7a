"""Tests for the per-worker runtime and its judge cache."""

import json
from unittest.mock import Mock, patch
from uuid import uuid4

import pytest
from cachetools import TTLCache

from storypack.core.config import Settings
from storypack.models.evidence import ChunkInput
from storypack.services.judges.classification_judge import ClassificationJudge
from storypack.temporal.runtime import Runtime


@pytest.fixture
def settings():
    base = Settings()
    judge = base.judge.model_copy(update={"cache_max_entries": 3, "cache_ttl_seconds": 120})
    return base.model_copy(update={"judge": judge})


class TestRuntime:
    def test_judge_cache_is_bounded_by_settings(self, settings):
        with patch("storypack.temporal.runtime.DatabaseClient.from_settings", return_value=Mock()), patch(
            "storypack.temporal.runtime.create_llm_client", return_value=Mock()
        ):
            runtime = Runtime.from_settings(settings)

        assert isinstance(runtime.judge_cache, TTLCache)
        assert runtime.judge_cache.maxsize == 3
        assert runtime.judge_cache.ttl == 120

    def test_judges_share_the_runtime_cache(self, settings):
        runtime = Runtime(settings=settings, database=Mock(), llm_client=Mock(), judge_cache=TTLCache(maxsize=3, ttl=120))

        classifier = runtime.chunk_classifier(Mock())

        assert classifier.judge.cache is runtime.judge_cache


class TestBoundedJudgeCache:
    @pytest.mark.asyncio
    async def test_oldest_entries_are_evicted(self, mock_llm_client):
        mock_llm_client.generate_content.return_value = json.dumps([])
        cache = TTLCache(maxsize=2, ttl=600)
        judge = ClassificationJudge(mock_llm_client, cache=cache)

        for _ in range(5):
            outcome = await judge.classify([ChunkInput(id=uuid4(), content="The deadline is Monday")])
            assert outcome.success is True

        assert len(cache) == 2
        assert mock_llm_client.generate_content.await_count == 5
