from datetime import datetime
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storypack.database.models import Pack, PackHealth
from storypack.models.health import HealthResult
from storypack.repositories.base_repository import BaseRepository


class HealthRepository(BaseRepository[PackHealth]):
    """Repository for pack health history."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, PackHealth)

    async def persist(self, pack_id: UUID, result: HealthResult, checked_at: datetime) -> PackHealth:
        """Write a history row and the pack's current score in one transaction."""
        row = PackHealth(
            pack_id=pack_id,
            score=result.score,
            status=result.status.value,
            factors=dict(result.factors, fallback=int(result.fallback)),
            computed_at=checked_at,
        )
        try:
            self.session.add(row)
            await self.session.execute(
                update(Pack)
                .where(Pack.id == pack_id)
                .values(
                    health_score=result.score,
                    health_status=result.status.value,
                    last_health_check=checked_at,
                )
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error persisting health for pack {pack_id}: {str(e)}",
                exc_info=True
            )
            raise
        return row
