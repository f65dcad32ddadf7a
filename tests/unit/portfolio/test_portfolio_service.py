"""Tests for workspace portfolio analytics."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import pytest

from storypack.models.portfolio import (
    BaselineRow,
    ChangeRequestRow,
    ConflictRow,
    DateRange,
    EditEventRow,
    PackRow,
    PortfolioData,
    ProjectRow,
    QAFlagRow,
    SourceRow,
)
from storypack.services.portfolio.portfolio_service import (
    PortfolioService,
    compute_portfolio_metrics,
    month_keys,
)

NOW = datetime(2024, 6, 15, tzinfo=timezone.utc)


@pytest.fixture
def workspace_data() -> PortfolioData:
    """Two projects; one baselined pack with full coverage, one thin pack."""
    return PortfolioData(
        workspace_id="w1",
        projects=[
            ProjectRow(id="pr1", name="Checkout", first_source_at=NOW - timedelta(days=30)),
            ProjectRow(id="pr2", name="Search", first_source_at=NOW - timedelta(days=10)),
        ],
        packs=[
            PackRow(
                id="p1",
                name="Payments",
                project_id="pr1",
                project_name="Checkout",
                latest_story_ids=["s1", "s2"],
                first_version_at=NOW - timedelta(days=20),
                first_baseline_at=NOW - timedelta(days=14),
                first_push_at=NOW - timedelta(days=4),
                approved=True,
            ),
            PackRow(
                id="p2",
                name="Filters",
                project_id="pr2",
                project_name="Search",
                latest_story_ids=["s3", "s4", "s5", "s6"],
                first_version_at=NOW - timedelta(days=6),
            ),
            PackRow(id="p3", name="Empty", project_id="pr2", project_name="Search"),
        ],
        story_ids_with_evidence=["s1", "s2", "s3", "old-story"],
        baselines=[BaselineRow(pack_id="p1", project_name="Checkout", created_at=NOW - timedelta(days=14))],
        change_requests=[
            ChangeRequestRow(status="approved", created_at=NOW - timedelta(days=3)),
            ChangeRequestRow(status="rejected", created_at=NOW - timedelta(days=2)),
            ChangeRequestRow(status="open", created_at=NOW - timedelta(days=1)),
        ],
        edit_events=[
            EditEventRow(pack_id="p2", created_at=NOW - timedelta(days=1)),
            EditEventRow(pack_id="p2", created_at=NOW - timedelta(days=2)),
            EditEventRow(pack_id="p1", created_at=NOW - timedelta(days=3)),
        ],
        qa_flags=[
            QAFlagRow(entity_id="s3", rule_code="VAGUE_TERM", created_at=NOW - timedelta(days=3)),
            QAFlagRow(entity_id="s3", rule_code="MISSING_AC", created_at=NOW - timedelta(days=3)),
            QAFlagRow(entity_id="s4", rule_code="VAGUE_TERM", created_at=NOW - timedelta(days=40)),
            QAFlagRow(entity_id="old-story", rule_code="VAGUE_TERM", created_at=NOW - timedelta(days=400)),
        ],
        conflicts=[
            ConflictRow(project_id="pr2"),
            ConflictRow(project_id="pr2"),
            ConflictRow(project_id="pr1", resolved=True),
        ],
        sources=[
            SourceRow(id="src1", updated_at=NOW - timedelta(days=61)),
            SourceRow(id="src2", updated_at=NOW - timedelta(days=5)),
        ],
    )


class TestMonthKeys:
    def test_crosses_year_boundary(self):
        assert month_keys(datetime(2024, 2, 15), 3) == ["2023-12", "2024-01", "2024-02"]


class TestComputePortfolioMetrics:
    def test_empty_workspace(self):
        metrics = compute_portfolio_metrics(PortfolioData(workspace_id="w0"), NOW)

        assert metrics.coverage.average_evidence_coverage == 0
        assert metrics.coverage.average_approval_coverage == 0
        assert metrics.quality.qa_pass_rate == 100
        assert metrics.cycle_time.avg_source_to_generation is None
        assert metrics.volatility.churn_hotspots == []
        assert [m.count for m in metrics.quality.ambiguous_word_trend] == [0] * 6

    def test_coverage(self, workspace_data):
        coverage = compute_portfolio_metrics(workspace_data, NOW).coverage

        # 3 of 6 latest stories have evidence
        assert coverage.average_evidence_coverage == 50
        assert coverage.average_approval_coverage == 33
        assert coverage.projects_with_no_baseline.names == ["Search"]

    def test_volatility(self, workspace_data):
        volatility = compute_portfolio_metrics(workspace_data, NOW).volatility

        assert volatility.baseline_frequency == {"Checkout": 1}
        assert volatility.change_request_volume.total == 3
        assert volatility.change_request_volume.approved == 1
        assert volatility.change_request_volume.rejected == 1
        assert [(h.pack_id, h.edit_count) for h in volatility.churn_hotspots] == [("p2", 2), ("p1", 1)]

    def test_cycle_time(self, workspace_data):
        cycle = compute_portfolio_metrics(workspace_data, NOW).cycle_time

        assert cycle.avg_source_to_generation == 7
        assert cycle.avg_generation_to_baseline == 6
        assert cycle.avg_baseline_to_push == 10

    def test_quality(self, workspace_data):
        quality = compute_portfolio_metrics(workspace_data, NOW).quality

        # s3 and s4 flagged out of 6 latest stories
        assert quality.qa_pass_rate == 67
        assert quality.common_qa_failures[0].rule_code == "VAGUE_TERM"
        assert quality.common_qa_failures[0].count == 3
        trend = {m.month: m.count for m in quality.ambiguous_word_trend}
        assert trend["2024-06"] == 1
        assert trend["2024-05"] == 1
        assert "2023-05" not in trend

    def test_risk_signals(self, workspace_data):
        risk = compute_portfolio_metrics(workspace_data, NOW).risk_signals

        assert risk.unresolved_conflicts == {"pr2": 2}
        assert [(p.pack_id, p.coverage) for p in risk.low_coverage_packs] == [("p2", 25.0)]
        assert risk.orphaned_stories == 3
        assert risk.stale_sources == 1


class TestPortfolioService:
    @pytest.mark.asyncio
    async def test_default_range_is_ninety_days(self):
        repo = Mock()
        repo.load = AsyncMock(return_value=PortfolioData(workspace_id="w0"))
        workspace_id = uuid4()

        await PortfolioService(repo).get_metrics(workspace_id, now=NOW)

        loaded_id, date_range = repo.load.await_args.args
        assert loaded_id == workspace_id
        assert date_range == DateRange(start=NOW - timedelta(days=90), end=NOW)
