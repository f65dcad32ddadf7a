"""Tests for conflict detection and pair canonicalisation."""

from unittest.mock import AsyncMock, Mock
from uuid import UUID, uuid4

import pytest

from storypack.core.exceptions import CollaboratorUnavailable
from storypack.models.conflicts import CandidatePair, ConflictVerdict
from storypack.models.outcomes import JudgeErrorKind, JudgeOutcome, StageStatus
from storypack.services.conflicts.conflict_detector import ConflictDetector, canonical_candidates
from storypack.services.judges.contradiction_judge import ContradictionJudge

C1 = UUID("00000000-0000-0000-0000-000000000001")
C2 = UUID("00000000-0000-0000-0000-000000000002")


@pytest.fixture
def deadline_pair():
    return CandidatePair(
        chunk_a_id=C1,
        chunk_b_id=C2,
        content_a="deadline is Monday",
        content_b="deadline is Friday",
        similarity=0.92,
        source_a_name="Kickoff call",
        source_b_name="Status email",
    )


@pytest.fixture
def mock_judge():
    judge = Mock()
    judge.judge = AsyncMock(
        return_value=JudgeOutcome.ok(
            [ConflictVerdict(pair_index=0, contradicts=True, summary="Different dates", confidence=0.9)]
        )
    )
    return judge


@pytest.fixture
def mock_chunk_repo(deadline_pair):
    repo = Mock()
    repo.nearest_pairs = AsyncMock(return_value=[deadline_pair])
    return repo


@pytest.fixture
def mock_conflict_repo():
    repo = Mock()
    repo.get_existing_pairs = AsyncMock(return_value=set())
    repo.create_if_absent = AsyncMock(return_value=uuid4())
    repo.purge_stale = AsyncMock(return_value=3)
    return repo


@pytest.fixture
def detector(mock_judge, mock_chunk_repo, mock_conflict_repo, judge_settings):
    return ConflictDetector(mock_judge, mock_chunk_repo, mock_conflict_repo, judge_settings)


class TestCanonicalCandidates:
    def test_reversed_pair_is_swapped(self, deadline_pair):
        reversed_pair = CandidatePair(
            chunk_a_id=C2, chunk_b_id=C1, content_a="deadline is Friday", content_b="deadline is Monday", similarity=0.92
        )

        pairs, skipped = canonical_candidates([reversed_pair], existing=set())

        assert skipped == 0
        assert pairs[0].chunk_a_id == C1
        assert pairs[0].content_a == "deadline is Monday"

    def test_both_orders_collapse_to_one(self, deadline_pair):
        reversed_pair = deadline_pair.canonical().model_copy(
            update={"chunk_a_id": C2, "chunk_b_id": C1}
        )

        pairs, skipped = canonical_candidates([deadline_pair, reversed_pair], existing=set())

        assert len(pairs) == 1
        assert skipped == 1

    def test_recorded_and_self_pairs_skipped(self, deadline_pair):
        self_pair = deadline_pair.model_copy(update={"chunk_b_id": C1})

        pairs, skipped = canonical_candidates([deadline_pair, self_pair], existing={(str(C1), str(C2))})

        assert pairs == []
        assert skipped == 2


class TestConflictDetector:
    @pytest.mark.asyncio
    async def test_contradiction_is_recorded(self, detector, mock_judge, mock_conflict_repo):
        workspace_id, project_id = uuid4(), uuid4()

        outcome = await detector.detect(workspace_id, project_id)

        assert outcome.status == StageStatus.COMPLETED
        assert outcome.created == 1
        mock_judge.judge.assert_awaited_once()
        kwargs = mock_conflict_repo.create_if_absent.await_args.kwargs
        assert kwargs["chunk_a_id"] == C1
        assert kwargs["chunk_b_id"] == C2
        assert kwargs["summary"] == "Different dates"
        assert kwargs["confidence"] == 0.9
        assert kwargs["similarity"] == 0.92

    @pytest.mark.asyncio
    async def test_rerun_skips_recorded_pair_without_judging(self, detector, mock_judge, mock_conflict_repo):
        mock_conflict_repo.get_existing_pairs.return_value = {(str(C1), str(C2))}

        outcome = await detector.detect(uuid4(), uuid4())

        assert outcome.created == 0
        assert outcome.skipped == 1
        mock_judge.judge.assert_not_called()
        mock_conflict_repo.create_if_absent.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_insert_counts_nothing(self, detector, mock_conflict_repo):
        mock_conflict_repo.create_if_absent.return_value = None

        outcome = await detector.detect(uuid4(), uuid4())

        assert outcome.created == 0

    @pytest.mark.asyncio
    async def test_non_contradiction_not_recorded(self, detector, mock_judge, mock_conflict_repo):
        mock_judge.judge.return_value = JudgeOutcome.ok(
            [ConflictVerdict(pair_index=0, contradicts=False, summary="", confidence=0.8)]
        )

        outcome = await detector.detect(uuid4(), uuid4())

        assert outcome.created == 0
        mock_conflict_repo.create_if_absent.assert_not_called()

    @pytest.mark.asyncio
    async def test_judge_failure_fails_single_batch(self, detector, mock_judge):
        mock_judge.judge.return_value = JudgeOutcome.failed(JudgeErrorKind.API_ERROR, "provider down")

        outcome = await detector.detect(uuid4(), uuid4())

        assert outcome.status == StageStatus.FAILED
        assert outcome.errors[0].message == "provider down"

    @pytest.mark.asyncio
    async def test_similarity_search_unavailable(self, detector, mock_chunk_repo, mock_judge):
        mock_chunk_repo.nearest_pairs.side_effect = CollaboratorUnavailable("pgvector unreachable")

        outcome = await detector.detect(uuid4(), uuid4())

        assert outcome.status == StageStatus.FAILED
        mock_judge.judge.assert_not_called()

    @pytest.mark.asyncio
    async def test_changed_chunks_passed_to_search(self, detector, mock_chunk_repo):
        project_id = uuid4()

        await detector.detect(uuid4(), project_id, changed_chunk_ids=[C1])

        mock_chunk_repo.nearest_pairs.assert_awaited_once_with(project_id, min_similarity=0.85, chunk_ids=[C1])

    @pytest.mark.asyncio
    async def test_purge_stale_conflicts(self, detector, mock_conflict_repo):
        assert await detector.purge_stale_conflicts(uuid4()) == 3


class TestConflictDetectorWithJudge:
    @pytest.mark.asyncio
    async def test_client_crash_fails_only_its_batch(
        self, mock_llm_client, mock_chunk_repo, mock_conflict_repo, judge_settings, deadline_pair
    ):
        budget_pair = CandidatePair(
            chunk_a_id=UUID("00000000-0000-0000-0000-000000000003"),
            chunk_b_id=UUID("00000000-0000-0000-0000-000000000004"),
            content_a="budget is 10k",
            content_b="budget is 12k",
            similarity=0.9,
        )
        mock_chunk_repo.nearest_pairs.return_value = [deadline_pair, budget_pair]

        async def generate_content(contents, **kwargs):
            if "Monday" in contents:
                raise ValueError("Expecting value: line 1 column 1")
            return '[{"index": 0, "contradicts": true, "summary": "Different budgets", "confidence": 0.8}]'

        mock_llm_client.generate_content.side_effect = generate_content
        settings = judge_settings.model_copy(update={"conflict_batch_size": 1})
        detector = ConflictDetector(
            ContradictionJudge(mock_llm_client), mock_chunk_repo, mock_conflict_repo, settings
        )

        outcome = await detector.detect(uuid4(), uuid4())

        assert outcome.status == StageStatus.PARTIAL
        assert outcome.created == 1
        assert mock_conflict_repo.create_if_absent.await_args.kwargs["summary"] == "Different budgets"
