import logging
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.exceptions import DirectoryUnavailableError
from app.models.user import User

logger = logging.getLogger(__name__)

class UserDirectory:
    """Read-only lookups of registered users"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_email(self, email: str) -> User | None:
        return await self._one(select(User).where(func.lower(User.email) == email.lower()))

    async def find_by_id(self, user_id) -> User | None:
        return await self._one(select(User).where(User.id == user_id))

    async def _one(self, stmt) -> User | None:
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"User directory lookup failed: {e}")
            raise DirectoryUnavailableError("User directory is unavailable") from e
        return result.scalar_one_or_none()
