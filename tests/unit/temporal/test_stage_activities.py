"""Tests for stage activities and their retry semantics."""

from unittest.mock import AsyncMock, MagicMock, Mock
from uuid import uuid4

import pytest
from temporalio.exceptions import ApplicationError
from temporalio.testing import ActivityEnvironment

from storypack.core.exceptions import CollaboratorUnavailable, NotFoundError
from storypack.models.outcomes import StageOutcome, StageStatus
from storypack.services.classification.chunk_classifier import ClassificationResult
from storypack.temporal.activities.stage_activities import StageActivities, raise_for_outcome


@pytest.fixture
def runtime():
    """Runtime double whose session maker yields a mock session."""
    runtime = Mock()
    runtime.database.session_maker = MagicMock()
    runtime.database.session_maker.return_value.__aenter__.return_value = AsyncMock()
    return runtime


@pytest.fixture
def activities(runtime):
    return StageActivities(runtime)


class TestRaiseForOutcome:
    def test_failed_outcome_raises_retryable(self):
        with pytest.raises(ApplicationError) as exc_info:
            raise_for_outcome(StageOutcome(stage="conflict_detection", status=StageStatus.FAILED))

        assert exc_info.value.non_retryable is False
        assert exc_info.value.type == "StageFailed"

    def test_partial_outcome_passes(self):
        raise_for_outcome(StageOutcome(stage="conflict_detection", status=StageStatus.PARTIAL))


class TestStageActivities:
    def test_all_activities_registered(self, activities):
        assert len(activities.all) == 7

    @pytest.mark.asyncio
    async def test_classify_source_returns_outcome(self, activities, runtime):
        unclassified = uuid4()
        classifier = Mock()
        classifier.classify_source = AsyncMock(
            return_value=ClassificationResult(
                outcome=StageOutcome(stage="chunk_classification", status=StageStatus.PARTIAL, processed=2),
                unclassified_chunk_ids=[unclassified],
            )
        )
        runtime.chunk_classifier.return_value = classifier

        result = await ActivityEnvironment().run(activities.classify_source, str(uuid4()))

        assert result["outcome"]["status"] == "partial"
        assert result["unclassified_chunk_ids"] == [str(unclassified)]

    @pytest.mark.asyncio
    async def test_missing_pack_is_non_retryable(self, activities, runtime):
        service = Mock()
        service.recompute = AsyncMock(side_effect=NotFoundError("Pack not found"))
        runtime.health_service.return_value = service

        with pytest.raises(ApplicationError) as exc_info:
            await ActivityEnvironment().run(activities.recompute_pack_health, str(uuid4()))

        assert exc_info.value.non_retryable is True
        assert exc_info.value.type == "NotFoundError"

    @pytest.mark.asyncio
    async def test_unavailable_collaborator_is_retryable(self, activities, runtime):
        service = Mock()
        service.get_metrics = AsyncMock(side_effect=CollaboratorUnavailable("db down"))
        runtime.portfolio_service.return_value = service

        with pytest.raises(ApplicationError) as exc_info:
            await ActivityEnvironment().run(activities.compute_portfolio_metrics, str(uuid4()))

        assert exc_info.value.non_retryable is False
        assert exc_info.value.type == "CollaboratorUnavailable"
