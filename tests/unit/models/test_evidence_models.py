"""Tests for confidence ordering, tag parsing and stage outcomes."""

from uuid import UUID

import pytest

from storypack.models.conflicts import CandidatePair
from storypack.models.evidence import (
    ClassificationTag,
    ConfidenceTier,
    confidence_priority,
    is_supporting,
    strongest_confidence,
)
from storypack.models.outcomes import StageErrorKind, StageOutcome, StageStatus


class TestConfidenceOrdering:
    def test_priority_order(self):
        assert confidence_priority("direct") > confidence_priority("inferred")
        assert confidence_priority("inferred") > confidence_priority("assumption")
        assert confidence_priority("assumption") > confidence_priority(None)
        assert confidence_priority("made-up") == confidence_priority("none")

    def test_strongest_accepts_enum_members(self):
        assert strongest_confidence([ConfidenceTier.INFERRED, ConfidenceTier.ASSUMPTION]) == "inferred"
        assert strongest_confidence([]) == "none"

    def test_supporting(self):
        assert is_supporting("inferred") is True
        assert is_supporting("assumption") is False
        assert is_supporting(None) is False


class TestClassificationTag:
    @pytest.mark.parametrize("value", [" Requirement ", "REQUIREMENT", "requirement"])
    def test_parse_is_lenient_on_case(self, value):
        assert ClassificationTag.parse(value) == ClassificationTag.REQUIREMENT

    @pytest.mark.parametrize("value", ["gossip", None, 3])
    def test_parse_rejects_unknown(self, value):
        assert ClassificationTag.parse(value) is None


class TestCandidatePair:
    def test_key_is_order_independent(self):
        a = UUID("00000000-0000-0000-0000-00000000000a")
        b = UUID("00000000-0000-0000-0000-00000000000b")
        forward = CandidatePair(chunk_a_id=a, chunk_b_id=b, content_a="x", content_b="y", similarity=0.9)
        backward = CandidatePair(chunk_a_id=b, chunk_b_id=a, content_a="y", content_b="x", similarity=0.9)

        assert forward.key == backward.key
        assert backward.canonical() == forward


class TestStageOutcome:
    @pytest.mark.parametrize(
        "attempted,failed,status",
        [
            (3, 0, StageStatus.COMPLETED),
            (3, 1, StageStatus.PARTIAL),
            (3, 3, StageStatus.FAILED),
            (0, 0, StageStatus.COMPLETED),
        ],
    )
    def test_finalize(self, attempted, failed, status):
        assert StageOutcome(stage="s").finalize(attempted, failed).status == status

    def test_record_error_keeps_context(self):
        outcome = StageOutcome(stage="s")

        outcome.record_error(StageErrorKind.JUDGE_FAILURE, "timed out", batch_index=2)

        assert outcome.errors[0].context == {"batch_index": 2}
