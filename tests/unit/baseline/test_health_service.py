"""Tests for pack health scoring and recomputation."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from storypack.core.exceptions import CollaboratorUnavailable, NotFoundError
from storypack.models.health import HealthInputs, HealthResult, HealthStatus
from storypack.services.baseline.health_service import (
    HealthService,
    compute_health,
    normalise_source_age,
    resolve_weights,
    score_to_status,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def pack():
    return SimpleNamespace(
        id=uuid4(),
        workspace_id=uuid4(),
        health_score=None,
        health_status=None,
        last_health_check=None,
        last_baseline_id=uuid4(),
        diverged_from_baseline=False,
    )


@pytest.fixture
def version():
    ac_ok = SimpleNamespace(id=uuid4(), sort_order=0, deleted_at=None)
    ac_missing = SimpleNamespace(id=uuid4(), sort_order=1, deleted_at=None)
    story = SimpleNamespace(id=uuid4(), sort_order=0, deleted_at=None, acceptance_criteria=[ac_ok, ac_missing])
    return SimpleNamespace(
        id=uuid4(), stories=[story], source_ids=[str(uuid4())], created_at=NOW - timedelta(days=2)
    )


@pytest.fixture
def mock_pack_repo(pack, version):
    ac_ok = version.stories[0].acceptance_criteria[0]
    repo = Mock()
    repo.get_by_id = AsyncMock(return_value=pack)
    repo.get_health_weights = AsyncMock(return_value=None)
    repo.get_latest_version = AsyncMock(return_value=version)
    repo.get_evidence_links = AsyncMock(
        return_value=[SimpleNamespace(entity_type="acceptance_criterion", entity_id=ac_ok.id, confidence="direct")]
    )
    repo.get_qa_flags = AsyncMock(return_value=[])
    repo.get_latest_source_update = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_health_repo():
    repo = Mock()
    repo.persist = AsyncMock()
    return repo


@pytest.fixture
def service(mock_pack_repo, mock_health_repo, health_settings):
    return HealthService(mock_pack_repo, mock_health_repo, health_settings)


class TestScoring:
    @pytest.mark.parametrize(
        "score,status",
        [
            (100, HealthStatus.HEALTHY),
            (80, HealthStatus.HEALTHY),
            (79, HealthStatus.STALE),
            (60, HealthStatus.STALE),
            (59, HealthStatus.AT_RISK),
            (40, HealthStatus.AT_RISK),
            (39, HealthStatus.OUTDATED),
            (0, HealthStatus.OUTDATED),
        ],
    )
    def test_status_bands(self, score, status):
        assert score_to_status(score) == status

    def test_source_age_is_linear_between_bounds(self):
        assert normalise_source_age(7) == 100
        assert normalise_source_age(48.5) == 50
        assert normalise_source_age(120) == 0

    def test_weighted_score(self, health_settings):
        inputs = HealthInputs(
            evidence_coverage=100,
            qa_pass_rate=100,
            last_source_refresh=NOW - timedelta(days=1),
            has_baseline=True,
        )

        result = compute_health(inputs, health_settings, NOW)

        assert result.score == 100
        assert result.status == HealthStatus.HEALTHY
        assert result.fallback is False

    def test_never_baselined_pulls_score_down(self, health_settings):
        inputs = HealthInputs(
            evidence_coverage=40, qa_pass_rate=40, last_source_refresh=NOW - timedelta(days=200)
        )

        result = compute_health(inputs, health_settings, NOW)

        # 40*.3 + 40*.25 + 0*.25 + 60*.2 = 34
        assert result.score == 34
        assert result.status == HealthStatus.OUTDATED
        assert result.factors["divergence"] == 60

    def test_missing_inputs_keep_last_score(self, health_settings):
        result = compute_health(HealthInputs(has_baseline=True), health_settings, NOW, last_score=55)

        assert result.fallback is True
        assert result.score == 55
        assert result.status == HealthStatus.AT_RISK

    def test_missing_inputs_without_history_use_default(self, health_settings):
        result = compute_health(HealthInputs(), health_settings, NOW)

        assert result.score == 100
        assert result.fallback is True

    def test_worsened(self):
        result = HealthResult(score=50, status=HealthStatus.AT_RISK, previous_status=HealthStatus.HEALTHY)
        improved = HealthResult(score=90, status=HealthStatus.HEALTHY, previous_status=HealthStatus.STALE)

        assert result.worsened is True
        assert improved.worsened is False


class TestWorkspaceWeights:
    def test_overrides_apply_on_top_of_defaults(self, health_settings):
        weights = resolve_weights({"evidenceCoverage": 0.5, "divergence": 0}, health_settings.weights)

        assert weights["evidence_coverage"] == 0.5
        assert weights["divergence"] == 0.0
        assert weights["qa_pass_rate"] == health_settings.weights["qa_pass_rate"]

    def test_invalid_entries_ignored(self, health_settings):
        weights = resolve_weights(
            {"sourceDrift": 0.4, "qa_pass_rate": "high", "source_age": -1, "divergence": True},
            health_settings.weights,
        )

        assert weights == health_settings.weights

    def test_missing_overrides_use_defaults(self, health_settings):
        assert resolve_weights(None, health_settings.weights) == health_settings.weights


class TestHealthService:
    @pytest.mark.asyncio
    async def test_recompute_persists(self, service, mock_health_repo, pack):
        result = await service.recompute(pack.id, now=NOW)

        # coverage 50, qa 100, age 100, baselined 100
        assert result.factors == {"divergence": 100, "evidence_coverage": 50, "qa_pass_rate": 100, "source_age": 100}
        assert result.score == 85
        assert result.persisted is True
        mock_health_repo.persist.assert_awaited_once_with(pack.id, result, NOW)

    @pytest.mark.asyncio
    async def test_open_flags_lower_qa_pass_rate(self, service, mock_pack_repo, version, pack):
        story = version.stories[0]
        mock_pack_repo.get_qa_flags.return_value = [
            SimpleNamespace(entity_id=story.acceptance_criteria[1].id, resolved_by=None),
        ]

        result = await service.recompute(pack.id, now=NOW)

        assert result.factors["qa_pass_rate"] == 0

    @pytest.mark.asyncio
    async def test_within_window_is_skipped(self, service, mock_health_repo, mock_pack_repo, pack):
        pack.health_score = 72
        pack.health_status = "stale"
        pack.last_health_check = NOW - timedelta(seconds=30)

        result = await service.recompute(pack.id, now=NOW)

        assert result.skipped is True
        assert result.score == 72
        mock_health_repo.persist.assert_not_called()
        mock_pack_repo.get_latest_version.assert_not_called()

    @pytest.mark.asyncio
    async def test_unavailable_inputs_fall_back(self, service, mock_pack_repo, pack):
        pack.health_score = 64
        pack.health_status = "stale"
        pack.last_health_check = NOW - timedelta(hours=1)
        mock_pack_repo.get_latest_version.side_effect = CollaboratorUnavailable("db down")

        result = await service.recompute(pack.id, now=NOW)

        assert result.fallback is True
        assert result.score == 64
        assert result.previous_status == HealthStatus.STALE

    @pytest.mark.asyncio
    async def test_persist_failure_does_not_raise(self, service, mock_health_repo, pack):
        mock_health_repo.persist.side_effect = OperationalError("UPDATE packs", {}, Exception("gone"))

        result = await service.recompute(pack.id, now=NOW)

        assert result.persisted is False

    @pytest.mark.asyncio
    async def test_missing_pack(self, service, mock_pack_repo):
        mock_pack_repo.get_by_id.return_value = None

        with pytest.raises(NotFoundError):
            await service.recompute(uuid4(), now=NOW)

    @pytest.mark.asyncio
    async def test_worsening_is_reported(self, service, mock_pack_repo, pack):
        pack.health_status = "healthy"
        pack.health_score = 95
        pack.last_health_check = NOW - timedelta(days=1)
        pack.diverged_from_baseline = True
        mock_pack_repo.get_latest_source_update.return_value = NOW - timedelta(days=90)
        mock_pack_repo.get_latest_version.return_value.created_at = NOW - timedelta(days=120)

        result = await service.recompute(pack.id, now=NOW)

        assert result.status != HealthStatus.HEALTHY
        assert result.worsened is True


class TestHealthServiceWorkspaceWeights:
    @pytest.mark.asyncio
    async def test_workspace_weights_change_score(self, service, mock_pack_repo, pack):
        mock_pack_repo.get_health_weights.return_value = {
            "evidenceCoverage": 1.0,
            "qaPassRate": 0,
            "sourceAge": 0,
            "divergence": 0,
        }

        result = await service.recompute(pack.id, now=NOW)

        # Only coverage (50) carries weight
        assert result.score == 50
        assert result.status == HealthStatus.AT_RISK
        mock_pack_repo.get_health_weights.assert_awaited_once_with(pack.workspace_id)

    @pytest.mark.asyncio
    async def test_unreadable_weights_fall_back_to_last_score(self, service, mock_pack_repo, pack):
        pack.health_score = 64
        mock_pack_repo.get_health_weights.side_effect = CollaboratorUnavailable("db down")

        result = await service.recompute(pack.id, now=NOW)

        assert result.fallback is True
        assert result.score == 64
