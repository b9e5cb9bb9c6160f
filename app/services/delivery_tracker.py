"""
In-memory delivery status tracking.

One ``DeliveryTracker`` is built at process start and handed to request
handlers through ``app.state``; its records live for the process lifetime
only. Retry correctness does not depend on it: the durable ``FileDelivery``
rows and the presence retry scheduler cover that.

Each record follows a forward-only state machine::

    pending -> sent -> delivered -> viewed -> downloaded
    pending|sent -> failed -> pending (retry)

Transitions outside the table raise ``InvalidTransitionError`` and leave the
record unchanged. Mutations on one record are serialized with a per-id lock.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from app.core.exceptions import InvalidTransitionError, NotFoundError
from app.core.time_utils import utcnow
from app.services.notifier import Notifier

logger = logging.getLogger(__name__)

PENDING = "pending"
SENT = "sent"
DELIVERED = "delivered"
VIEWED = "viewed"
DOWNLOADED = "downloaded"
FAILED = "failed"

STATUSES = (PENDING, SENT, DELIVERED, VIEWED, DOWNLOADED, FAILED)

# target status -> statuses it may be entered from
ALLOWED_FROM = {
    SENT: {PENDING},
    DELIVERED: {PENDING, SENT},
    VIEWED: {DELIVERED},
    DOWNLOADED: {DELIVERED, VIEWED},
    FAILED: {PENDING, SENT},
    PENDING: {FAILED},
}

TIMESTAMP_FIELD = {
    SENT: "sent_at",
    DELIVERED: "delivered_at",
    VIEWED: "viewed_at",
    DOWNLOADED: "downloaded_at",
    FAILED: "failed_at",
}

DEFAULT_MAX_RETRIES = 3


@dataclass
class DeliveryStatus:
    id: str
    share_id: str
    sender_id: str
    recipient_id: str
    recipient_email: str
    status: str = PENDING
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    downloaded_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    notification_channels: List[str] = field(default_factory=lambda: ["email", "push"])
    last_notification_sent: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


Sender = Callable[[DeliveryStatus], Awaitable[None]]


def notifier_sender(notifier: Notifier) -> Sender:
    """Best-effort share notification; an offline recipient still counts as sent"""

    async def send(record: DeliveryStatus) -> None:
        accepted = await notifier.send_to_user(
            record.recipient_id,
            "file-shared",
            {
                "delivery_id": record.id,
                "share_id": record.share_id,
                "sender_id": record.sender_id,
                "recipient_email": record.recipient_email,
                "notification_channels": record.notification_channels,
            },
        )
        if not accepted:
            logger.debug(f"Recipient of delivery {record.id} has no live socket")

    return send


class DeliveryTracker:
    def __init__(
        self,
        sender: Optional[Sender] = None,
        clock: Callable[[], datetime] = utcnow,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self._deliveries: Dict[str, DeliveryStatus] = {}
        self._by_share: Dict[str, List[str]] = defaultdict(list)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.sender = sender
        self.clock = clock
        self.max_retries = max_retries

    def track_delivery(
        self,
        share_id,
        sender_id,
        recipient_id,
        recipient_email: str,
        notification_channels: Optional[List[str]] = None,
    ) -> str:
        delivery_id = f"delivery_{uuid.uuid4().hex}"
        record = DeliveryStatus(
            id=delivery_id,
            share_id=str(share_id),
            sender_id=str(sender_id),
            recipient_id=str(recipient_id),
            recipient_email=recipient_email,
            retry_count=0,
            max_retries=self.max_retries,
        )
        if notification_channels:
            record.notification_channels = list(notification_channels)
        self._deliveries[delivery_id] = record
        self._by_share[record.share_id].append(delivery_id)
        logger.info(f"Tracking delivery {delivery_id} for share {share_id} to {recipient_email}")
        return delivery_id

    def get_delivery(self, delivery_id: str) -> DeliveryStatus:
        record = self._deliveries.get(delivery_id)
        if record is None:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        return record

    def get_share_deliveries(self, share_id) -> List[DeliveryStatus]:
        return [self._deliveries[i] for i in self._by_share.get(str(share_id), [])]

    async def mark_as_sent(self, delivery_id: str) -> DeliveryStatus:
        return await self._transition(delivery_id, SENT)

    async def mark_as_delivered(self, delivery_id: str) -> DeliveryStatus:
        return await self._transition(delivery_id, DELIVERED)

    async def mark_as_viewed(self, delivery_id: str) -> DeliveryStatus:
        return await self._transition(delivery_id, VIEWED)

    async def mark_as_downloaded(self, delivery_id: str) -> DeliveryStatus:
        return await self._transition(delivery_id, DOWNLOADED)

    async def mark_as_failed(self, delivery_id: str, reason: str) -> DeliveryStatus:
        return await self._transition(delivery_id, FAILED, reason=reason)

    async def send(self, delivery_id: str) -> bool:
        """Attempt the first notification of a pending delivery"""
        record = self.get_delivery(delivery_id)
        async with self._locks[delivery_id]:
            self._check(record, SENT)
            return await self._attempt(record)

    async def retry_delivery(self, delivery_id: str) -> bool:
        """
        Re-attempt a failed delivery.

        Returns False without touching the record when the retry budget is
        spent; otherwise the record goes back to pending and ends up sent or
        failed depending on the attempt.
        """
        record = self.get_delivery(delivery_id)
        async with self._locks[delivery_id]:
            self._check(record, PENDING)
            if record.retry_count >= record.max_retries:
                logger.warning(f"Delivery {delivery_id} exhausted {record.max_retries} retries")
                return False
            record.retry_count += 1
            record.status = PENDING
            record.failure_reason = None
            return await self._attempt(record)

    def get_delivery_analytics(self, start: datetime, end: datetime) -> dict:
        """Aggregate over records whose sent_at falls in [start, end)"""
        window = [
            r for r in self._deliveries.values()
            if r.sent_at is not None and start <= r.sent_at < end
        ]
        by_status = {status: 0 for status in STATUSES}
        for record in window:
            by_status[record.status] += 1

        delivery_times = [
            (r.delivered_at - r.sent_at).total_seconds()
            for r in window
            if r.delivered_at is not None
        ]
        reached_delivery = len(delivery_times)
        # anything in the window that never reached the recipient
        failures = [r for r in window if r.delivered_at is None]
        failures.sort(key=lambda r: r.failed_at or r.sent_at, reverse=True)

        return {
            "total_deliveries": len(window),
            "by_status": by_status,
            "delivered": reached_delivery,
            "undelivered": len(window) - reached_delivery,
            "failed": by_status[FAILED],
            "delivery_rate": round(reached_delivery / len(window), 4) if window else 0.0,
            "average_delivery_time": (sum(delivery_times) / reached_delivery) if reached_delivery else 0.0,
            "total_retries": sum(r.retry_count for r in window),
            "recent_failures": failures[:20],
        }

    async def _attempt(self, record: DeliveryStatus) -> bool:
        try:
            if self.sender is not None:
                await self.sender(record)
        except Exception as e:
            logger.error(f"Notification for delivery {record.id} failed: {e}")
            self._apply(record, FAILED, reason=str(e) or type(e).__name__)
            return False
        self._apply(record, SENT)
        record.last_notification_sent = record.sent_at
        return True

    async def _transition(self, delivery_id: str, target: str, reason: Optional[str] = None) -> DeliveryStatus:
        record = self.get_delivery(delivery_id)
        async with self._locks[delivery_id]:
            self._check(record, target)
            self._apply(record, target, reason=reason)
            return record

    def _check(self, record: DeliveryStatus, target: str) -> None:
        if record.status not in ALLOWED_FROM[target]:
            logger.warning(f"Rejected transition of delivery {record.id}: {record.status} -> {target}")
            raise InvalidTransitionError(record.id, record.status, target)

    def _apply(self, record: DeliveryStatus, target: str, reason: Optional[str] = None) -> None:
        now = self._stamp(record)
        record.status = target
        if target in TIMESTAMP_FIELD:
            setattr(record, TIMESTAMP_FIELD[target], now)
        if target == FAILED:
            record.failure_reason = reason
        logger.info(f"Delivery {record.id} is now {target}")

    def _stamp(self, record: DeliveryStatus) -> datetime:
        """Current time, never earlier than a timestamp the record already holds"""
        now = self.clock()
        reached = [getattr(record, f) for f in TIMESTAMP_FIELD.values() if getattr(record, f) is not None]
        if reached and now < max(reached):
            return max(reached)
        return now
