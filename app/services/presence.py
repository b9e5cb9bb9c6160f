import logging
from datetime import timedelta
from typing import Dict

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from app.config import settings
from app.core.time_utils import utcnow
from app.models.presence import UserPresence
from app.services.notifier import Notifier
from app.services.retry_scheduler import RetryScheduler

logger = logging.getLogger(__name__)

class PresenceService:
    """
    Tracks who is online and turns offline -> online transitions into
    delivery retry scans.

    Transitions follow the connections held by this process; the
    UserPresence row only mirrors them for other readers.
    """

    def __init__(self, notifier: Notifier, scheduler: RetryScheduler):
        self.notifier = notifier
        self.scheduler = scheduler
        self._live: Dict[str, int] = {}

    async def _get_or_create(self, db: AsyncSession, user_id) -> UserPresence:
        result = await db.execute(select(UserPresence).where(UserPresence.user_id == user_id))
        presence = result.scalar_one_or_none()
        if presence is None:
            presence = UserPresence(user_id=user_id, is_online=False, connection_count=0, last_seen=utcnow())
            db.add(presence)
            await db.flush()
        return presence

    async def connection_opened(self, db: AsyncSession, user_id) -> bool:
        """Register a new connection; returns True when the user just came online"""
        key = str(user_id)
        count = self._live.get(key, 0) + 1
        self._live[key] = count
        came_online = count == 1

        presence = await self._get_or_create(db, user_id)
        presence.connection_count = count
        presence.is_online = True
        presence.last_seen = utcnow()
        await db.commit()

        if came_online:
            logger.info(f"User {user_id} is online")
            self.notifier.emit("user-status-changed", {"user_id": str(user_id), "is_online": True})
            # Detached: the caller never waits for the retries
            self.scheduler.on_user_online(user_id)
        return came_online

    async def connection_closed(self, db: AsyncSession, user_id) -> bool:
        """Drop a connection; returns True when the user just went offline"""
        key = str(user_id)
        held = self._live.get(key, 0)
        count = max(held - 1, 0)
        went_offline = held > 0 and count == 0
        if count:
            self._live[key] = count
        else:
            self._live.pop(key, None)

        presence = await self._get_or_create(db, user_id)
        presence.connection_count = count
        presence.last_seen = utcnow()
        if count == 0:
            presence.is_online = False
        await db.commit()

        if went_offline:
            logger.info(f"User {user_id} is offline")
            self.scheduler.on_user_offline(user_id)
            self.notifier.emit("user-status-changed", {"user_id": str(user_id), "is_online": False})
        return went_offline

    async def mark_all_offline(self, db: AsyncSession) -> None:
        """Forget connections left over from a previous process"""
        self._live.clear()
        await db.execute(update(UserPresence).values(is_online=False, connection_count=0))
        await db.commit()

    async def heartbeat(self, db: AsyncSession, user_id) -> None:
        presence = await self._get_or_create(db, user_id)
        presence.last_seen = utcnow()
        await db.commit()

    async def is_recently_online(self, db: AsyncSession, user_id) -> bool:
        result = await db.execute(select(UserPresence).where(UserPresence.user_id == user_id))
        presence = result.scalar_one_or_none()
        if presence is None or not presence.is_online:
            return False
        window = timedelta(seconds=settings.PRESENCE_ONLINE_WINDOW_SECONDS)
        return utcnow() - presence.last_seen < window

    async def presence_map(self, db: AsyncSession) -> dict:
        result = await db.execute(select(UserPresence).options(selectinload(UserPresence.user)))
        presence_map = {}
        for presence in result.scalars().all():
            presence_map[presence.user.email] = {
                "is_online": presence.is_online,
                "last_seen": presence.last_seen.isoformat(),
                "user": {
                    "id": str(presence.user.id),
                    "name": presence.user.name,
                    "email": presence.user.email,
                    "avatar_url": presence.user.avatar_url,
                },
            }
        return presence_map
