from typing import Awaitable, Callable, Generic, Optional, Type, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from storypack.core.exceptions import CollaboratorUnavailable
from storypack.utils.logging import get_logger

# Define a generic type for SQLAlchemy models
ModelType = TypeVar("ModelType")
R = TypeVar("R")

LOGGER = get_logger(__name__)

TRANSIENT_ERRORS = (OperationalError, DBAPIError)


class BaseRepository(Generic[ModelType]):
    """Base repository implementing common read operations.

    Reads go through ``_read`` which retries once on a transient database
    error and then raises ``CollaboratorUnavailable``. Writes are not
    retried here; the job layer re-invokes the whole stage.
    """

    def __init__(self, session: AsyncSession, model: Type[ModelType]):
        """Initialize the repository.

        Args:
            session: SQLAlchemy async session
            model: The SQLAlchemy model class this repository manages
        """
        self.session = session
        self.model = model
        self.logger = LOGGER

    async def _read(self, operation: Callable[[], Awaitable[R]], description: str) -> R:
        """Run an idempotent read with one immediate retry.

        Raises:
            CollaboratorUnavailable: If both attempts fail with a transient error
        """
        try:
            return await operation()
        except TRANSIENT_ERRORS as first_error:
            self.logger.warning(
                f"Transient error during {description}, retrying once",
                extra={"model": self.model.__name__, "error": str(first_error)},
            )
            await self.session.rollback()
            try:
                return await operation()
            except TRANSIENT_ERRORS as e:
                self.logger.error(
                    f"Database unavailable during {description}",
                    exc_info=True,
                    extra={"model": self.model.__name__},
                )
                raise CollaboratorUnavailable(
                    f"Database unavailable during {description}", original_error=e
                ) from e

    async def get_by_id(self, id: UUID) -> Optional[ModelType]:
        """Get a record by its ID.

        Args:
            id: The UUID of the record

        Returns:
            The record if found, None otherwise
        """
        async def _query():
            result = await self.session.execute(select(self.model).where(self.model.id == id))
            return result.scalar_one_or_none()

        return await self._read(_query, f"get {self.model.__name__} {id}")
