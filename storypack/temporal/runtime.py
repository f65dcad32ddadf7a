"""Process-wide handles shared by every activity.

Built once by the worker and passed by reference; nothing here is created at
import time.
"""

from dataclasses import dataclass
from typing import Any, Dict

from cachetools import TTLCache
from sqlalchemy.ext.asyncio import AsyncSession

from storypack.core.config import Settings
from storypack.core.database import DatabaseClient
from storypack.core.llm_client import LLMClient, create_llm_client
from storypack.repositories.baseline_repository import BaselineRepository
from storypack.repositories.chunk_repository import ChunkRepository
from storypack.repositories.conflict_repository import ConflictRepository
from storypack.repositories.health_repository import HealthRepository
from storypack.repositories.pack_repository import PackRepository
from storypack.repositories.portfolio_repository import PortfolioRepository
from storypack.services.baseline.baseline_service import BaselineService
from storypack.services.baseline.health_service import HealthService
from storypack.services.classification.chunk_classifier import ChunkClassifier
from storypack.services.conflicts.conflict_detector import ConflictDetector
from storypack.services.judges.classification_judge import ClassificationJudge
from storypack.services.judges.contradiction_judge import ContradictionJudge
from storypack.services.judges.review_judges import CoherenceJudge, SelfReviewJudge
from storypack.services.portfolio.portfolio_service import PortfolioService
from storypack.services.quality.duplicate_detector import DuplicateDetector
from storypack.services.quality.quality_aggregator import QualityAggregator
from storypack.services.traceability.graph_builder import TraceabilityService


@dataclass
class Runtime:
    """Settings, database client, LLM client and judge cache for one worker process.

    The judge cache holds at most ``judge.cache_max_entries`` results and
    expires each after ``judge.cache_ttl_seconds``.
    """

    settings: Settings
    database: DatabaseClient
    llm_client: LLMClient
    judge_cache: TTLCache

    @classmethod
    def from_settings(cls, settings: Settings) -> "Runtime":
        return cls(
            settings=settings,
            database=DatabaseClient.from_settings(settings.db),
            llm_client=create_llm_client(settings.llm),
            judge_cache=TTLCache(
                maxsize=settings.judge.cache_max_entries,
                ttl=settings.judge.cache_ttl_seconds,
            ),
        )

    def _judge_kwargs(self) -> Dict[str, Any]:
        return {
            "timeout_seconds": self.settings.judge.timeout_seconds,
            "cache": self.judge_cache,
        }

    def chunk_classifier(self, session: AsyncSession) -> ChunkClassifier:
        judge = ClassificationJudge(
            self.llm_client,
            chunk_chars=self.settings.judge.classification_chunk_chars,
            **self._judge_kwargs(),
        )
        return ChunkClassifier(judge, ChunkRepository(session), self.settings.judge)

    def conflict_detector(self, session: AsyncSession) -> ConflictDetector:
        judge = ContradictionJudge(
            self.llm_client,
            chunk_chars=self.settings.judge.conflict_chunk_chars,
            **self._judge_kwargs(),
        )
        return ConflictDetector(
            judge, ChunkRepository(session), ConflictRepository(session), self.settings.judge
        )

    def quality_aggregator(self, session: AsyncSession) -> QualityAggregator:
        quality = self.settings.quality
        return QualityAggregator(
            self_review_judge=SelfReviewJudge(self.llm_client, **self._judge_kwargs()),
            coherence_judge=CoherenceJudge(self.llm_client, **self._judge_kwargs()),
            duplicate_detector=DuplicateDetector(quality.duplicate_threshold, quality.minhash_num_perm),
            settings=quality,
            pack_repository=PackRepository(session),
        )

    def traceability_service(self, session: AsyncSession) -> TraceabilityService:
        return TraceabilityService(PackRepository(session))

    def baseline_service(self, session: AsyncSession) -> BaselineService:
        return BaselineService(PackRepository(session), BaselineRepository(session), self.settings.baseline)

    def health_service(self, session: AsyncSession) -> HealthService:
        return HealthService(PackRepository(session), HealthRepository(session), self.settings.health)

    def portfolio_service(self, session: AsyncSession) -> PortfolioService:
        return PortfolioService(PortfolioRepository(session))
