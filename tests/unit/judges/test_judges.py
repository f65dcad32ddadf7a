"""Tests for judge error mapping, parsing and memoisation."""

import asyncio
import json
from uuid import uuid4

import pytest

from storypack.core.exceptions import APIClientError
from storypack.models.conflicts import CandidatePair
from storypack.models.evidence import ChunkInput, ClassificationTag
from storypack.models.outcomes import JudgeErrorKind
from storypack.models.quality import SourceTopic, StoryInput
from storypack.services.judges.classification_judge import ClassificationJudge
from storypack.services.judges.contradiction_judge import ContradictionJudge
from storypack.services.judges.review_judges import CoherenceJudge, SelfReviewJudge


@pytest.fixture
def chunks():
    return [
        ChunkInput(id=uuid4(), content="The deadline is Monday"),
        ChunkInput(id=uuid4(), content="Hi all, thanks for joining"),
    ]


@pytest.fixture
def stories():
    return [
        StoryInput(id="s1", persona="planner", want="see the deadline"),
        StoryInput(id="s2", persona="admin", want="export reports"),
    ]


class TestBaseJudgeFailures:
    @pytest.mark.asyncio
    async def test_timeout_maps_to_timeout_kind(self, mock_llm_client, chunks):
        async def slow(**kwargs):
            await asyncio.sleep(1)
            return "[]"

        mock_llm_client.generate_content.side_effect = slow
        judge = ClassificationJudge(mock_llm_client, timeout_seconds=0.01)

        outcome = await judge.classify(chunks)

        assert outcome.success is False
        assert outcome.error_kind == JudgeErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_api_error_maps_to_api_error_kind(self, mock_llm_client, chunks):
        mock_llm_client.generate_content.side_effect = APIClientError("502 from provider")
        judge = ClassificationJudge(mock_llm_client)

        outcome = await judge.classify(chunks)

        assert outcome.success is False
        assert outcome.error_kind == JudgeErrorKind.API_ERROR
        assert "502" in outcome.message

    @pytest.mark.asyncio
    async def test_unparseable_output(self, mock_llm_client, chunks):
        mock_llm_client.generate_content.return_value = "I could not classify these."
        judge = ClassificationJudge(mock_llm_client)

        outcome = await judge.classify(chunks)

        assert outcome.success is False
        assert outcome.error_kind == JudgeErrorKind.UNPARSEABLE

    @pytest.mark.asyncio
    async def test_cache_skips_second_call(self, mock_llm_client, chunks):
        mock_llm_client.generate_content.return_value = json.dumps(
            [{"chunk_id": str(chunks[0].id), "tag": "decision", "confidence": 0.8}]
        )
        judge = ClassificationJudge(mock_llm_client, cache={})

        first = await judge.classify(chunks)
        second = await judge.classify(chunks)

        assert first.success and second.success
        assert second.data == first.data
        assert mock_llm_client.generate_content.await_count == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, mock_llm_client, chunks):
        mock_llm_client.generate_content.return_value = "garbage"
        cache = {}
        judge = ClassificationJudge(mock_llm_client, cache=cache)

        await judge.classify(chunks)

        assert cache == {}


class TestClassificationJudge:
    @pytest.mark.asyncio
    async def test_drops_unknown_ids_and_tags(self, mock_llm_client, chunks):
        mock_llm_client.generate_content.return_value = "```json\n" + json.dumps(
            [
                {"chunk_id": str(chunks[0].id), "tag": "Decision", "confidence": 1.4},
                {"chunk_id": str(chunks[1].id), "tag": "gossip", "confidence": 0.9},
                {"chunk_id": str(uuid4()), "tag": "noise", "confidence": 0.9},
            ]
        ) + "\n```"
        judge = ClassificationJudge(mock_llm_client)

        outcome = await judge.classify(chunks)

        assert outcome.success is True
        assert len(outcome.data) == 1
        verdict = outcome.data[0]
        assert verdict.chunk_id == chunks[0].id
        assert verdict.tag == ClassificationTag.DECISION
        assert verdict.confidence == 1.0


class TestContradictionJudge:
    @pytest.mark.asyncio
    async def test_out_of_range_indexes_dropped(self, mock_llm_client):
        pair = CandidatePair(
            chunk_a_id=uuid4(),
            chunk_b_id=uuid4(),
            content_a="deadline is Monday",
            content_b="deadline is Friday",
            similarity=0.92,
        )
        mock_llm_client.generate_content.return_value = json.dumps(
            [
                {"index": 0, "contradicts": True, "summary": "Different dates", "confidence": 0.9},
                {"index": 3, "contradicts": True, "summary": "bogus", "confidence": 0.9},
            ]
        )
        judge = ContradictionJudge(mock_llm_client)

        outcome = await judge.judge([pair])

        assert outcome.success is True
        assert [v.pair_index for v in outcome.data] == [0]
        assert outcome.data[0].summary == "Different dates"
        assert outcome.data[0].confidence == 0.9


class TestReviewJudges:
    @pytest.mark.asyncio
    async def test_self_review_flattens_issues(self, mock_llm_client, stories):
        mock_llm_client.generate_content.return_value = json.dumps(
            {
                "overallAssessment": "weak",
                "confidenceScore": 140,
                "storyReviews": [
                    {
                        "storyIndex": 1,
                        "issues": [
                            {"issueType": "hallucination", "severity": "error", "description": "no source"},
                            {"issueType": "made_up", "severity": "error"},
                        ],
                    },
                    {"storyIndex": 9, "issues": [{"issueType": "untestable"}]},
                ],
                "missedRequirements": [{"topic": "SSO"}, {"suggestion": "no topic"}],
            }
        )
        judge = SelfReviewJudge(mock_llm_client)

        outcome = await judge.review(stories, "[chunk:1]\ntext")

        verdict = outcome.data
        assert verdict.confidence_score == 100
        assert len(verdict.issues) == 1
        assert verdict.issues[0].story_index == 1
        assert verdict.issues[0].severity.value == "error"
        assert [m.topic for m in verdict.missed_requirements] == ["SSO"]

    @pytest.mark.asyncio
    async def test_coherence_is_derived_from_off_topic_list(self, mock_llm_client, stories):
        mock_llm_client.generate_content.return_value = json.dumps(
            {"coherent": True, "offTopicStories": [{"index": 1, "reason": "not discussed"}]}
        )
        judge = CoherenceJudge(mock_llm_client)

        outcome = await judge.check([SourceTopic(label="deadlines", evidence_depth=3)], stories)

        assert outcome.data.is_coherent is False
        assert outcome.data.off_topic_stories[0].index == 1

    @pytest.mark.asyncio
    async def test_coherence_without_schema_is_unparseable(self, mock_llm_client, stories):
        mock_llm_client.generate_content.return_value = '{"answer": "looks fine"}'
        judge = CoherenceJudge(mock_llm_client)

        outcome = await judge.check([SourceTopic(label="deadlines")], stories)

        assert outcome.error_kind == JudgeErrorKind.UNPARSEABLE


class TestMalformedOutput:
    @pytest.mark.asyncio
    async def test_non_list_issues_are_ignored(self, mock_llm_client, stories):
        mock_llm_client.generate_content.return_value = json.dumps(
            {"overallAssessment": "acceptable", "confidenceScore": 60, "storyReviews": [{"storyIndex": 0, "issues": 5}]}
        )
        judge = SelfReviewJudge(mock_llm_client)

        outcome = await judge.review(stories, "")

        assert outcome.success is True
        assert outcome.data.issues == []
        assert outcome.data.confidence_score == 60

    @pytest.mark.asyncio
    async def test_non_list_sections_are_ignored(self, mock_llm_client, stories):
        mock_llm_client.generate_content.return_value = json.dumps(
            {"storyReviews": {"0": []}, "missedRequirements": "none", "confidenceScore": "1e400"}
        )
        judge = SelfReviewJudge(mock_llm_client)

        outcome = await judge.review(stories, "")

        assert outcome.success is True
        assert outcome.data.issues == []
        assert outcome.data.missed_requirements == []

    @pytest.mark.asyncio
    async def test_overflowing_index_is_dropped(self, mock_llm_client):
        pair = CandidatePair(
            chunk_a_id=uuid4(),
            chunk_b_id=uuid4(),
            content_a="deadline is Monday",
            content_b="deadline is Friday",
            similarity=0.92,
        )
        mock_llm_client.generate_content.return_value = (
            '[{"index": 1e400, "contradicts": true}, {"index": 0, "contradicts": true, "summary": "Different dates"}]'
        )
        judge = ContradictionJudge(mock_llm_client)

        outcome = await judge.judge([pair])

        assert outcome.success is True
        assert [v.pair_index for v in outcome.data] == [0]

    @pytest.mark.asyncio
    async def test_parse_type_error_is_unparseable(self, mock_llm_client):
        mock_llm_client.generate_content.return_value = "{}"
        cache = {}
        judge = SelfReviewJudge(mock_llm_client, cache=cache)

        def parse(raw):
            raise TypeError("'int' object is not iterable")

        outcome = await judge._call("system", "message", parse)

        assert outcome.success is False
        assert outcome.error_kind == JudgeErrorKind.UNPARSEABLE
        assert cache == {}

    @pytest.mark.asyncio
    async def test_unexpected_client_error_is_api_error(self, mock_llm_client, chunks):
        mock_llm_client.generate_content.side_effect = ValueError("Expecting value: line 1 column 1")
        judge = ClassificationJudge(mock_llm_client)

        outcome = await judge.classify(chunks)

        assert outcome.success is False
        assert outcome.error_kind == JudgeErrorKind.API_ERROR
        assert "ValueError" in outcome.message
