"""Queries and mutations on durable FileDelivery rows."""

import logging
from datetime import datetime, timedelta
from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.core.time_utils import utcnow
from app.models.delivery import FileDelivery, DeliveryState
from app.models.share import FileShare

logger = logging.getLogger(__name__)

def delivery_expiry(share: FileShare, now: datetime) -> datetime:
    """A delivery never outlives its share"""
    expires_at = now + timedelta(days=settings.DELIVERY_TTL_DAYS)
    if share.expires_at is not None and share.expires_at < expires_at:
        return share.expires_at
    return expires_at

def create_for_share(db: AsyncSession, share: FileShare, now: datetime | None = None) -> FileDelivery:
    now = now or utcnow()
    delivery = FileDelivery(
        file_id=share.file_id,
        share_id=share.id,
        sender_id=share.sender_user_id,
        recipient_id=share.recipient_user_id,
        status=DeliveryState.PENDING,
        delivery_attempts=0,
        expires_at=delivery_expiry(share, now),
    )
    db.add(delivery)
    return delivery

def active_share_clause(now: datetime):
    """SQL form of FileShare.is_active; deliveries without a share pass"""
    return or_(
        FileShare.id.is_(None),
        and_(
            FileShare.revoked.is_(False),
            or_(FileShare.expires_at.is_(None), FileShare.expires_at > now),
            or_(FileShare.max_access_count.is_(None), FileShare.access_count < FileShare.max_access_count),
        ),
    )

def retryable_clause(now: datetime, max_retries: int):
    return and_(
        FileDelivery.status.in_(DeliveryState.RETRYABLE),
        FileDelivery.delivery_attempts < max_retries,
        FileDelivery.expires_at > now,
        active_share_clause(now),
    )

def eligible_for_retry(recipient_id, now: datetime | None = None, max_retries: int | None = None):
    """Statement selecting the ids of a recipient's deliveries a presence scan may retry"""
    now = now or utcnow()
    if max_retries is None:
        max_retries = settings.DELIVERY_MAX_RETRIES
    return (
        select(FileDelivery.id)
        .outerjoin(FileShare, FileDelivery.share_id == FileShare.id)
        .where(FileDelivery.recipient_id == recipient_id, retryable_clause(now, max_retries))
        .order_by(FileDelivery.created_at)
    )

async def pending_for_user(db: AsyncSession, user_id, now: datetime | None = None) -> list[FileDelivery]:
    """Retryable deliveries where the user is sender or recipient"""
    now = now or utcnow()
    result = await db.execute(
        select(FileDelivery)
        .outerjoin(FileShare, FileDelivery.share_id == FileShare.id)
        .where(
            or_(FileDelivery.sender_id == user_id, FileDelivery.recipient_id == user_id),
            retryable_clause(now, settings.DELIVERY_MAX_RETRIES),
        )
        .order_by(FileDelivery.created_at.desc())
    )
    return list(result.scalars().all())

async def complete_for_share(db: AsyncSession, share_id, now: datetime | None = None) -> FileDelivery | None:
    """Completion callback: the recipient opened the share, so its delivery is done"""
    result = await db.execute(select(FileDelivery).where(FileDelivery.share_id == share_id))
    delivery = result.scalar_one_or_none()
    if delivery is None or delivery.status == DeliveryState.DELIVERED:
        return None
    delivery.status = DeliveryState.DELIVERED
    delivery.delivered_at = now or utcnow()
    delivery.failure_reason = None
    await db.flush()
    logger.info(f"Delivery {delivery.id} completed by recipient access to share {share_id}")
    return delivery

def delivery_to_dict(delivery: FileDelivery) -> dict:
    return {
        "id": str(delivery.id),
        "file_id": str(delivery.file_id),
        "share_id": str(delivery.share_id) if delivery.share_id else None,
        "sender_id": str(delivery.sender_id),
        "recipient_id": str(delivery.recipient_id),
        "status": delivery.status,
        "delivery_attempts": delivery.delivery_attempts,
        "failure_reason": delivery.failure_reason,
        "last_retry_at": delivery.last_retry_at.isoformat() if delivery.last_retry_at else None,
        "expires_at": delivery.expires_at.isoformat() if delivery.expires_at else None,
        "delivered_at": delivery.delivered_at.isoformat() if delivery.delivered_at else None,
    }
