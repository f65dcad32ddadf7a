"""Pack health scoring.

``compute_health`` is a pure function of four signals: evidence coverage, QA
pass rate, source age and divergence state. ``HealthService`` gathers the
signals, applies the recompute window and persists the result.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from storypack.core.config import HealthSettings
from storypack.core.exceptions import CollaboratorUnavailable, NotFoundError
from storypack.models.evidence import EvidenceEntityType, is_supporting
from storypack.models.health import HealthInputs, HealthResult, HealthStatus
from storypack.repositories.health_repository import HealthRepository
from storypack.repositories.pack_repository import PackRepository, live_criteria, live_stories
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)

DIVERGENCE_SCORES = {
    "baselined": 100,
    "diverged": 40,
    "never_baselined": 60,
}


# Camel-case keys accepted alongside the factor names
WEIGHT_ALIASES = {
    "evidenceCoverage": "evidence_coverage",
    "qaPassRate": "qa_pass_rate",
    "sourceAge": "source_age",
}


def resolve_weights(overrides: Optional[Dict[str, Any]], defaults: Dict[str, float]) -> Dict[str, float]:
    """Apply a workspace's weight overrides on top of ``defaults``.

    Unknown factors and values that are not non-negative numbers are ignored.
    Factors the override does not name keep their default weight.
    """
    weights = dict(defaults)
    if not isinstance(overrides, dict):
        return weights
    for name, value in overrides.items():
        factor = WEIGHT_ALIASES.get(name, name)
        if factor not in weights or isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            continue
        weights[factor] = float(value)
    return weights


def score_to_status(score: int) -> HealthStatus:
    if score >= 80:
        return HealthStatus.HEALTHY
    if score >= 60:
        return HealthStatus.STALE
    if score >= 40:
        return HealthStatus.AT_RISK
    return HealthStatus.OUTDATED


def normalise_source_age(days: float, fresh_days: int = 7, expired_days: int = 90) -> int:
    """100 up to ``fresh_days``, 0 from ``expired_days``, linear in between.

    Example:
        >>> normalise_source_age(3)
        100
        >>> normalise_source_age(90)
        0
    """
    if days <= fresh_days:
        return 100
    if days >= expired_days:
        return 0
    return int(100 - (days - fresh_days) / (expired_days - fresh_days) * 100 + 0.5)


def divergence_factor(inputs: HealthInputs) -> int:
    if not inputs.has_baseline:
        return DIVERGENCE_SCORES["never_baselined"]
    if inputs.diverged_from_baseline:
        return DIVERGENCE_SCORES["diverged"]
    return DIVERGENCE_SCORES["baselined"]


def compute_health(
    inputs: HealthInputs,
    settings: HealthSettings,
    now: datetime,
    last_score: Optional[int] = None,
    weights: Optional[Dict[str, float]] = None,
) -> HealthResult:
    """Weighted health score and status band.

    When coverage, QA pass rate or the source refresh time is missing, the
    pack's last known score is kept (or ``settings.default_score`` when there
    is none) and the result is marked ``fallback``. ``weights`` defaults to
    ``settings.weights``.
    """
    weights = weights if weights is not None else settings.weights
    factors: Dict[str, int] = {"divergence": divergence_factor(inputs)}
    if inputs.evidence_coverage is not None:
        factors["evidence_coverage"] = int(inputs.evidence_coverage + 0.5)
    if inputs.qa_pass_rate is not None:
        factors["qa_pass_rate"] = int(inputs.qa_pass_rate + 0.5)
    if inputs.last_source_refresh is not None:
        age_days = (now - inputs.last_source_refresh).total_seconds() / 86400
        factors["source_age"] = normalise_source_age(
            age_days, settings.fresh_source_days, settings.expired_source_days
        )

    missing = [name for name in weights if name not in factors]
    if missing:
        score = last_score if last_score is not None else settings.default_score
        return HealthResult(score=score, status=score_to_status(score), factors=factors, fallback=True)

    total_weight = sum(weights.values())
    weighted = sum(factors[name] * weight for name, weight in weights.items())
    score = max(0, min(100, int(weighted / total_weight + 0.5))) if total_weight else settings.default_score
    return HealthResult(score=score, status=score_to_status(score), factors=factors)


class HealthService:
    """Recomputes and records pack health without ever failing the caller."""

    def __init__(
        self,
        pack_repository: PackRepository,
        health_repository: HealthRepository,
        settings: HealthSettings,
    ):
        self.pack_repository = pack_repository
        self.health_repository = health_repository
        self.settings = settings

    async def recompute(self, pack_id: UUID, now: Optional[datetime] = None) -> HealthResult:
        """Recompute health for ``pack_id``.

        A check inside the recompute window returns the stored result with
        ``skipped`` set. Unavailable inputs fall back to the last score and an
        unavailable store leaves ``persisted`` False.

        Raises:
            NotFoundError: If the pack does not exist
        """
        now = now or datetime.now(timezone.utc)
        pack = await self.pack_repository.get_by_id(pack_id)
        if pack is None:
            raise NotFoundError(f"Pack {pack_id} not found")

        previous_status = HealthStatus(pack.health_status) if pack.health_status else None
        window = timedelta(seconds=self.settings.recompute_window_seconds)
        if (
            pack.last_health_check is not None
            and pack.health_score is not None
            and now - pack.last_health_check < window
        ):
            return HealthResult(
                score=pack.health_score,
                status=previous_status or score_to_status(pack.health_score),
                skipped=True,
                persisted=True,
            )

        # A retried read rolls back the session and expires ``pack``
        last_score = pack.health_score
        workspace_id = pack.workspace_id
        base = HealthInputs(
            has_baseline=pack.last_baseline_id is not None,
            diverged_from_baseline=pack.diverged_from_baseline,
        )

        weights = self.settings.weights
        try:
            weights = resolve_weights(
                await self.pack_repository.get_health_weights(workspace_id), weights
            )
            inputs = await self.gather_inputs(pack_id, base)
        except CollaboratorUnavailable as e:
            LOGGER.warning(
                f"Health inputs unavailable for pack {pack_id}, keeping last score: {e}",
                extra={"pack_id": str(pack_id)},
            )
            inputs = base

        result = compute_health(inputs, self.settings, now, last_score=last_score, weights=weights)
        result.previous_status = previous_status

        try:
            await self.health_repository.persist(pack_id, result, now)
            result.persisted = True
        except SQLAlchemyError:
            LOGGER.error(f"Could not persist health for pack {pack_id}", exc_info=True)

        LOGGER.info(
            f"Pack {pack_id} health {result.score} ({result.status.value})",
            extra={"fallback": result.fallback, "worsened": result.worsened},
        )
        return result

    async def gather_inputs(self, pack_id: UUID, base: HealthInputs) -> HealthInputs:
        """Fill coverage, QA pass rate and refresh time into ``base`` from the latest version."""
        version = await self.pack_repository.get_latest_version(pack_id)
        if version is None:
            return base

        stories = live_stories(version)
        criteria = {story.id: live_criteria(story) for story in stories}
        criterion_ids = [ac.id for acs in criteria.values() for ac in acs]

        links = await self.pack_repository.get_evidence_links([], criterion_ids)
        supported = {
            link.entity_id
            for link in links
            if link.entity_type == EvidenceEntityType.ACCEPTANCE_CRITERION.value
            and is_supporting(link.confidence)
        }
        coverage = 100.0 * len(supported) / len(criterion_ids) if criterion_ids else 100.0

        # A story passes QA when neither it nor any of its criteria has an open flag
        owner = {ac.id: story.id for story in stories for ac in criteria[story.id]}
        owner.update({story.id: story.id for story in stories})
        flagged = {
            owner[flag.entity_id]
            for flag in await self.pack_repository.get_qa_flags(version.id)
            if flag.resolved_by is None and flag.entity_id in owner
        }
        qa_pass_rate = 100.0 * (len(stories) - len(flagged)) / len(stories) if stories else 100.0

        refreshed = version.created_at
        source_update = await self.pack_repository.get_latest_source_update(
            [UUID(str(sid)) for sid in (version.source_ids or [])]
        )
        if source_update is not None and (refreshed is None or source_update > refreshed):
            refreshed = source_update

        return base.model_copy(
            update={
                "evidence_coverage": coverage,
                "qa_pass_rate": qa_pass_rate,
                "last_source_refresh": refreshed,
            }
        )
