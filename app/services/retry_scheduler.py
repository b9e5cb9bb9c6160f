"""
Presence-triggered retry of durable file deliveries.

When a user comes online the scheduler starts one background task for them.
The task selects the user's retryable FileDelivery rows and retries each one
in its own session, so a row that blows up never stops the others. Every
attempt bumps ``delivery_attempts`` first; once a row has used its three
attempts it stays FAILED until it expires.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.core.exceptions import DeliveryAttemptError
from app.core.time_utils import utcnow
from app.models.delivery import FileDelivery, DeliveryState
from app.models.share import FileShare
from app.services import file_deliveries
from app.services.notifier import Notifier

logger = logging.getLogger(__name__)

DeliverFn = Callable[[FileDelivery], Awaitable[None]]


def notifier_delivery(notifier: Notifier) -> DeliverFn:
    """Default attempt: push the delivery to the recipient's live sockets"""

    async def deliver(delivery: FileDelivery) -> None:
        accepted = await notifier.send_to_user(
            delivery.recipient_id,
            "file-delivery",
            {
                "delivery_id": str(delivery.id),
                "file_id": str(delivery.file_id),
                "share_id": str(delivery.share_id) if delivery.share_id else None,
                "sender_id": str(delivery.sender_id),
                "attempt_number": delivery.delivery_attempts,
            },
        )
        if not accepted:
            raise DeliveryAttemptError("Recipient has no live connection")

    return deliver


class RetryScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        notifier: Notifier,
        deliver: Optional[DeliverFn] = None,
        max_retries: Optional[int] = None,
        attempt_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.deliver = deliver or notifier_delivery(notifier)
        self.max_retries = settings.DELIVERY_MAX_RETRIES if max_retries is None else max_retries
        self.attempt_timeout = settings.DELIVERY_ATTEMPT_TIMEOUT_SECONDS if attempt_timeout is None else attempt_timeout
        self._scans: Dict[str, asyncio.Task] = {}
        self._single: Set[asyncio.Task] = set()

    def on_user_online(self, user_id) -> Optional[asyncio.Task]:
        """Start a background retry scan for ``user_id`` unless one is already running"""
        key = str(user_id)
        running = self._scans.get(key)
        if running is not None and not running.done():
            logger.debug(f"Retry scan already running for user {key}")
            return running
        task = asyncio.create_task(self.retry_pending_deliveries(user_id), name=f"delivery-retry-{key}")
        self._scans[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return task

    def on_user_offline(self, user_id) -> bool:
        """Cancel an in-flight scan; the rows stay retryable for the next online event"""
        task = self._scans.get(str(user_id))
        if task is None or task.done():
            return False
        task.cancel()
        logger.info(f"Cancelled delivery retries for user {user_id} (went offline)")
        return True

    def schedule_single(self, delivery_id) -> asyncio.Task:
        """Retry one delivery in the background (manual retry route)"""
        task = asyncio.create_task(self.retry_delivery(delivery_id))
        self._single.add(task)
        task.add_done_callback(self._single.discard)
        return task

    async def retry_pending_deliveries(self, user_id) -> Dict[str, str]:
        """Retry every eligible delivery addressed to ``user_id``; returns id -> final status"""
        async with self.session_factory() as db:
            result = await db.execute(file_deliveries.eligible_for_retry(user_id, utcnow(), self.max_retries))
            delivery_ids = list(result.scalars().all())

        if not delivery_ids:
            return {}

        logger.info(f"Retrying {len(delivery_ids)} deliveries for user {user_id}")
        statuses = {}
        for delivery_id in delivery_ids:
            try:
                statuses[str(delivery_id)] = await self.retry_delivery(delivery_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Retry of delivery {delivery_id} crashed: {e}", exc_info=True)
                statuses[str(delivery_id)] = DeliveryState.FAILED
        return statuses

    async def retry_delivery(self, delivery_id) -> Optional[str]:
        """One attempt on one row. Errors of the attempt are recorded on the row."""
        async with self.session_factory() as db:
            delivery = await self._start_attempt(db, delivery_id)
            if delivery is None:
                return None

            try:
                await asyncio.wait_for(self.deliver(delivery), timeout=self.attempt_timeout)
            except asyncio.CancelledError:
                # A cancelled last attempt still spends the budget
                exhausted = delivery.delivery_attempts >= self.max_retries
                status = DeliveryState.FAILED if exhausted else DeliveryState.PENDING
                await self._finish(db, delivery, status, "Retry cancelled")
                raise
            except asyncio.TimeoutError:
                return await self._finish(db, delivery, DeliveryState.FAILED, "Delivery attempt timed out")
            except Exception as e:
                logger.warning(f"Delivery attempt {delivery.delivery_attempts} for {delivery.id} failed: {e}")
                return await self._finish(db, delivery, DeliveryState.FAILED, str(e) or type(e).__name__)

            return await self._finish(db, delivery, DeliveryState.DELIVERED)

    async def shutdown(self) -> None:
        tasks = [t for t in list(self._scans.values()) + list(self._single) if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _start_attempt(self, db: AsyncSession, delivery_id) -> Optional[FileDelivery]:
        now = utcnow()
        result = await db.execute(
            select(FileDelivery)
            .outerjoin(FileShare, FileDelivery.share_id == FileShare.id)
            .where(FileDelivery.id == delivery_id, file_deliveries.retryable_clause(now, self.max_retries))
        )
        delivery = result.scalar_one_or_none()
        if delivery is None:
            logger.info(f"Delivery {delivery_id} is no longer eligible for retry")
            return None

        delivery.delivery_attempts += 1
        delivery.status = DeliveryState.PENDING
        delivery.last_retry_at = now
        try:
            await db.commit()
        except StaleDataError:
            await db.rollback()
            logger.info(f"Delivery {delivery_id} was updated concurrently, skipping")
            return None

        self.notifier.emit("delivery-retry-started", {
            "delivery_id": str(delivery.id),
            "file_id": str(delivery.file_id),
            "sender_id": str(delivery.sender_id),
            "recipient_id": str(delivery.recipient_id),
            "attempt_number": delivery.delivery_attempts,
            "max_retries": self.max_retries,
            "retry_at": now.isoformat(),
        })
        return delivery

    async def _finish(self, db: AsyncSession, delivery: FileDelivery, status: str, reason: Optional[str] = None) -> str:
        now = utcnow()
        delivery.status = status
        delivery.failure_reason = reason
        if status == DeliveryState.DELIVERED:
            delivery.delivered_at = now
        try:
            await db.commit()
        except StaleDataError:
            await db.rollback()
            logger.info(f"Delivery {delivery.id} changed while retrying, keeping the concurrent update")
            return status

        payload = {
            "delivery_id": str(delivery.id),
            "file_id": str(delivery.file_id),
            "sender_id": str(delivery.sender_id),
            "recipient_id": str(delivery.recipient_id),
            "attempt_number": delivery.delivery_attempts,
        }
        if status == DeliveryState.DELIVERED:
            self.notifier.emit("delivery-completed", {**payload, "status": "delivered", "delivered_at": now.isoformat()})
        elif status == DeliveryState.FAILED:
            self.notifier.emit("delivery-failed", {**payload, "failure_reason": reason})
        return status

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._scans.get(key) is task:
            del self._scans[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Retry scan for user {key} failed: {task.exception()}")
