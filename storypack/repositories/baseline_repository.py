from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storypack.core.exceptions import ConstraintViolation
from storypack.database.models import Baseline, Pack
from storypack.repositories.base_repository import BaseRepository


class BaselineRepository(BaseRepository[Baseline]):
    """Repository for immutable baseline snapshots."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Baseline)

    async def max_version_number(self, pack_id: UUID) -> int:
        """Highest baseline number for the pack, 0 when none exist."""
        async def _query():
            result = await self.session.execute(
                select(func.max(Baseline.version_number)).where(Baseline.pack_id == pack_id)
            )
            return result.scalar_one_or_none()

        current = await self._read(_query, f"max baseline number for pack {pack_id}")
        return int(current or 0)

    async def create_and_point_pack(
        self,
        workspace_id: UUID,
        pack_id: UUID,
        pack_version_id: UUID,
        version_number: int,
        version_label: str,
        snapshot_data: Dict[str, Any],
        created_by: str,
        note: Optional[str] = None,
    ) -> Baseline:
        """Insert a baseline and repoint the pack at it in one transaction.

        Either both the baseline row and the pack update are committed or
        neither is.

        Raises:
            ConstraintViolation: If another writer took ``version_number`` first
        """
        baseline = Baseline(
            workspace_id=workspace_id,
            pack_id=pack_id,
            pack_version_id=pack_version_id,
            version_number=version_number,
            version_label=version_label,
            snapshot_data=snapshot_data,
            created_by=created_by,
            note=note,
        )
        try:
            self.session.add(baseline)
            await self.session.flush()
            await self.session.execute(
                update(Pack)
                .where(Pack.id == pack_id)
                .values(last_baseline_id=baseline.id, diverged_from_baseline=False)
            )
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            self.logger.warning(
                f"Baseline number {version_number} already taken for pack {pack_id}",
                extra={"pack_id": str(pack_id), "version_number": version_number},
            )
            raise ConstraintViolation(
                f"Baseline v{version_number} already exists for pack {pack_id}",
                original_error=e,
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error creating baseline for pack {pack_id}: {str(e)}",
                exc_info=True
            )
            raise

        return baseline
