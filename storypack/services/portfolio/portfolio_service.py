"""Workspace-wide portfolio analytics.

``compute_portfolio_metrics`` is a pure pass over rows loaded by
``PortfolioRepository``; it never writes and every ratio has a defined value
for an empty workspace.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import UUID

from storypack.models.portfolio import (
    ChangeRequestVolume,
    ChurnHotspot,
    CoverageMetrics,
    CycleTimeMetrics,
    DateRange,
    LowCoveragePack,
    MonthCount,
    NamedCount,
    PortfolioData,
    PortfolioMetrics,
    QualityMetrics,
    RiskMetrics,
    RuleCount,
    VolatilityMetrics,
)
from storypack.repositories.portfolio_repository import PortfolioRepository
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_WINDOW_DAYS = 90
STALE_SOURCE_DAYS = 60
LOW_COVERAGE_PERCENT = 50
TOP_N = 5
TREND_MONTHS = 6
VAGUE_TERM_RULE = "VAGUE_TERM"


def default_date_range(now: datetime) -> DateRange:
    return DateRange(start=now - timedelta(days=DEFAULT_WINDOW_DAYS), end=now)


def _rounded_ratio(part: int, whole: int, empty: int) -> int:
    if whole == 0:
        return empty
    return int(100.0 * part / whole + 0.5)


def _average_days(durations: List[float]) -> Optional[int]:
    if not durations:
        return None
    return int(sum(durations) / len(durations) + 0.5)


def _days_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start is None or end is None:
        return None
    return (end - start).days


def month_keys(now: datetime, months: int = TREND_MONTHS) -> List[str]:
    """``YYYY-MM`` keys for the last ``months`` months, oldest first.

    Example:
        >>> month_keys(datetime(2024, 2, 15), 3)
        ['2023-12', '2024-01', '2024-02']
    """
    year, month = now.year, now.month
    keys = []
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def compute_portfolio_metrics(
    data: PortfolioData, now: datetime, date_range: Optional[DateRange] = None
) -> PortfolioMetrics:
    """Coverage, volatility, cycle-time, quality and risk rollups for a workspace.

    Baselines, change requests and edits in ``data`` are expected to already be
    restricted to ``date_range``; the range is only used for logging here.
    """
    date_range = date_range or default_date_range(now)
    with_evidence = set(data.story_ids_with_evidence)
    packs_by_id = {pack.id: pack for pack in data.packs}

    # Coverage and orphans over each pack's latest version; packs without a version are skipped
    total_stories = 0
    stories_with_evidence = 0
    orphaned = 0
    low_coverage: List[LowCoveragePack] = []
    latest_story_ids = set()
    for pack in data.packs:
        if pack.first_version_at is None:
            continue
        story_ids = pack.latest_story_ids
        latest_story_ids.update(story_ids)
        covered = sum(1 for sid in story_ids if sid in with_evidence)
        total_stories += len(story_ids)
        stories_with_evidence += covered
        orphaned += len(story_ids) - covered

        pack_coverage = 100.0 * covered / len(story_ids) if story_ids else 0.0
        if pack_coverage < LOW_COVERAGE_PERCENT:
            low_coverage.append(
                LowCoveragePack(
                    pack_id=pack.id,
                    pack_name=pack.name,
                    project_id=pack.project_id,
                    project_name=pack.project_name,
                    coverage=round(pack_coverage, 1),
                )
            )

    baselined_packs = {baseline.pack_id for baseline in data.baselines}
    no_baseline = [
        project.name
        for project in data.projects
        if not any(p.id in baselined_packs for p in data.packs if p.project_id == project.id)
    ]

    coverage = CoverageMetrics(
        average_evidence_coverage=_rounded_ratio(stories_with_evidence, total_stories, empty=0),
        average_approval_coverage=_rounded_ratio(
            sum(1 for pack in data.packs if pack.approved), len(data.packs), empty=0
        ),
        projects_with_no_baseline=NamedCount(count=len(no_baseline), names=no_baseline),
    )

    edit_counts = Counter(event.pack_id for event in data.edit_events if event.pack_id in packs_by_id)
    volatility = VolatilityMetrics(
        baseline_frequency=dict(Counter(baseline.project_name for baseline in data.baselines)),
        change_request_volume=ChangeRequestVolume(
            total=len(data.change_requests),
            approved=sum(1 for cr in data.change_requests if cr.status == "approved"),
            rejected=sum(1 for cr in data.change_requests if cr.status == "rejected"),
        ),
        churn_hotspots=[
            ChurnHotspot(
                pack_id=pack_id,
                pack_name=packs_by_id[pack_id].name,
                project_name=packs_by_id[pack_id].project_name,
                edit_count=count,
            )
            for pack_id, count in edit_counts.most_common(TOP_N)
        ],
    )

    first_source = {project.id: project.first_source_at for project in data.projects}
    source_to_generation, generation_to_baseline, baseline_to_push = [], [], []
    for pack in data.packs:
        for bucket, start, end in (
            (source_to_generation, first_source.get(pack.project_id), pack.first_version_at),
            (generation_to_baseline, pack.first_version_at, pack.first_baseline_at),
            (baseline_to_push, pack.first_baseline_at, pack.first_push_at),
        ):
            days = _days_between(start, end)
            if days is not None:
                bucket.append(days)

    cycle_time = CycleTimeMetrics(
        avg_source_to_generation=_average_days(source_to_generation),
        avg_generation_to_baseline=_average_days(generation_to_baseline),
        avg_baseline_to_push=_average_days(baseline_to_push),
    )

    flagged_stories = {flag.entity_id for flag in data.qa_flags if flag.entity_id in latest_story_ids}
    trend: Dict[str, int] = {key: 0 for key in month_keys(now)}
    for flag in data.qa_flags:
        if flag.rule_code != VAGUE_TERM_RULE:
            continue
        key = f"{flag.created_at.year:04d}-{flag.created_at.month:02d}"
        if key in trend:
            trend[key] += 1

    quality = QualityMetrics(
        qa_pass_rate=_rounded_ratio(total_stories - len(flagged_stories), total_stories, empty=100),
        common_qa_failures=[
            RuleCount(rule_code=rule, count=count)
            for rule, count in Counter(flag.rule_code for flag in data.qa_flags).most_common(TOP_N)
        ],
        ambiguous_word_trend=[MonthCount(month=month, count=count) for month, count in trend.items()],
    )

    stale_cutoff = now - timedelta(days=STALE_SOURCE_DAYS)
    risk = RiskMetrics(
        unresolved_conflicts=dict(
            Counter(conflict.project_id for conflict in data.conflicts if not conflict.resolved)
        ),
        low_coverage_packs=low_coverage,
        orphaned_stories=orphaned,
        stale_sources=sum(1 for source in data.sources if source.updated_at < stale_cutoff),
    )

    LOGGER.info(
        f"Portfolio metrics for workspace {data.workspace_id}",
        extra={
            "packs": len(data.packs),
            "stories": total_stories,
            "range_start": date_range.start.isoformat(),
            "range_end": date_range.end.isoformat(),
        },
    )

    return PortfolioMetrics(
        coverage=coverage,
        volatility=volatility,
        cycle_time=cycle_time,
        quality=quality,
        risk_signals=risk,
    )


class PortfolioService:
    """Read-only portfolio rollups; safe to run alongside any write path."""

    def __init__(self, portfolio_repository: PortfolioRepository):
        self.portfolio_repository = portfolio_repository

    async def get_metrics(
        self,
        workspace_id: UUID,
        date_range: Optional[DateRange] = None,
        now: Optional[datetime] = None,
    ) -> PortfolioMetrics:
        now = now or datetime.now(timezone.utc)
        date_range = date_range or default_date_range(now)
        data = await self.portfolio_repository.load(workspace_id, date_range)
        return compute_portfolio_metrics(data, now, date_range)
