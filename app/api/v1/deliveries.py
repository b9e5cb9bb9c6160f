import logging
import uuid
from datetime import timedelta
from typing import Literal
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from app.api.deps import get_delivery_tracker, get_notifier, get_presence_service, get_retry_scheduler
from app.api.v1.auth import get_current_user
from app.config import settings
from app.core.exceptions import AccessDeniedError, NotFoundError, RetryExhaustedError, ValidationError
from app.core.time_utils import utcnow
from app.db.session import get_db
from app.models.audit import AuditSeverity
from app.models.delivery import DeliveryState, FileDelivery
from app.models.share import FileShare
from app.models.user import User
from app.services import file_deliveries
from app.services.audit import log_audit_event
from app.services.delivery_tracker import DeliveryStatus, DeliveryTracker
from app.services.notifier import Notifier
from app.services.presence import PresenceService
from app.services.retry_scheduler import RetryScheduler
from app.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

router = APIRouter()

TIME_RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

class DeliveryAction(BaseModel):
    action: str
    delivery_id: str | None = None
    share_id: uuid.UUID | None = None
    recipient_email: EmailStr | None = None

def _can_touch(record: DeliveryStatus, user: User) -> bool:
    return str(user.id) in (record.sender_id, record.recipient_id) or user.is_admin

@router.post("/")
async def delivery_action(
    payload: DeliveryAction,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    tracker: DeliveryTracker = Depends(get_delivery_tracker),
    notifier: Notifier = Depends(get_notifier),
):
    """Drive the in-memory delivery state machine"""
    action = payload.action

    if action in ("mark_delivered", "mark_viewed", "mark_downloaded", "retry_delivery"):
        if not payload.delivery_id:
            raise ValidationError(f"delivery_id is required for {action} action")

        record = tracker.get_delivery(payload.delivery_id)
        if not _can_touch(record, current_user):
            raise AccessDeniedError("Not allowed to update this delivery")

        if action == "retry_delivery":
            success = await tracker.retry_delivery(record.id)
            message = "Delivery retry initiated" if success else "Delivery retry failed"
            severity = AuditSeverity.MEDIUM
        else:
            mark = {
                "mark_delivered": tracker.mark_as_delivered,
                "mark_viewed": tracker.mark_as_viewed,
                "mark_downloaded": tracker.mark_as_downloaded,
            }[action]
            await mark(record.id)
            success = True
            message = f"Delivery marked as {record.status}"
            severity = AuditSeverity.LOW

        notifier.emit("delivery-status-update", {
            "delivery_id": record.id,
            "status": record.status,
            "action": action,
        })
        await log_audit_event(
            db, "FILE_ACCESS", user_id=current_user.id, resource="delivery", resource_id=record.id,
            details={"action": action, "success": success}, severity=severity,
        )
        return {"success": success, "message": message, "delivery_id": record.id, "status": record.status}

    if action == "track_delivery":
        if not payload.share_id or not payload.recipient_email:
            raise ValidationError("share_id and recipient_email are required for track_delivery action")

        share = await db.get(FileShare, payload.share_id)
        if share is None:
            raise NotFoundError("Share not found")
        if share.sender_user_id != current_user.id:
            raise AccessDeniedError("Only the share creator can track its deliveries")

        recipient = await UserDirectory(db).find_by_email(payload.recipient_email)
        if recipient is None:
            raise NotFoundError("The recipient email is not registered in the system")

        delivery_id = tracker.track_delivery(
            share.id,
            current_user.id,
            recipient.id,
            recipient.email,
            notification_channels=settings.DEFAULT_NOTIFICATION_CHANNELS,
        )
        notifier.emit("delivery-status-update", {
            "delivery_id": delivery_id,
            "share_id": str(share.id),
            "recipient_email": recipient.email,
            "status": "pending",
            "action": "track",
        })
        await log_audit_event(
            db, "FILE_SHARE", user_id=current_user.id, resource="delivery", resource_id=delivery_id,
            details={"action": "track_delivery", "share_id": str(share.id), "recipient_email": recipient.email},
        )
        return {"success": True, "message": "Delivery tracking initiated", "delivery_id": delivery_id}

    raise ValidationError(f"Unknown action: {action}")

@router.get("/")
async def get_deliveries(
    share_id: uuid.UUID | None = None,
    time_range: Literal["24h", "7d", "30d"] = "7d",
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    tracker: DeliveryTracker = Depends(get_delivery_tracker),
):
    """Per-share delivery detail, or analytics over a time range"""
    if share_id is not None:
        result = await db.execute(
            select(FileShare).options(selectinload(FileShare.file)).where(FileShare.id == share_id)
        )
        share = result.scalar_one_or_none()
        if share is None:
            raise NotFoundError("Share not found")
        if share.sender_user_id != current_user.id:
            raise AccessDeniedError("Access denied")

        return {
            "share_id": str(share.id),
            "file": {
                "id": str(share.file.id),
                "filename": share.file.filename,
                "size_bytes": share.file.size_bytes,
                "mime_type": share.file.mime_type,
            },
            "creator": {"id": str(current_user.id), "name": current_user.name, "email": current_user.email},
            "deliveries": [d.to_dict() for d in tracker.get_share_deliveries(share.id)],
            "view_count": share.view_count,
            "last_accessed_at": share.last_accessed_at.isoformat() if share.last_accessed_at else None,
        }

    to_date = utcnow()
    from_date = to_date - TIME_RANGES[time_range]
    analytics = tracker.get_delivery_analytics(from_date, to_date)
    analytics["average_delivery_time"] = round(analytics["average_delivery_time"])
    analytics["recent_failures"] = [r.to_dict() for r in analytics["recent_failures"]]
    return {
        "analytics": analytics,
        "time_range": {"from": from_date.isoformat(), "to": to_date.isoformat()},
    }

@router.get("/retries")
async def get_pending_retries(
    user_id: uuid.UUID | None = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    presence: PresenceService = Depends(get_presence_service),
):
    """Durable deliveries that can still be retried, for the caller or (admins) anyone"""
    user_id = user_id or current_user.id
    if user_id != current_user.id and not current_user.is_admin:
        raise AccessDeniedError("Not allowed to view another user's deliveries")

    deliveries = await file_deliveries.pending_for_user(db, user_id)
    online_cache = {}
    retries = []
    for delivery in deliveries:
        if delivery.recipient_id not in online_cache:
            online_cache[delivery.recipient_id] = await presence.is_recently_online(db, delivery.recipient_id)
        recipient_online = online_cache[delivery.recipient_id]
        retries.append({
            **file_deliveries.delivery_to_dict(delivery),
            "recipient_online": recipient_online,
            "can_retry": recipient_online and delivery.delivery_attempts < settings.DELIVERY_MAX_RETRIES,
        })

    return {
        "pending_retries": retries,
        "total_pending": len(retries),
        "online_recipients": sum(1 for r in retries if r["recipient_online"]),
    }

@router.post("/{delivery_id}/retry")
async def retry_file_delivery(
    delivery_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    presence: PresenceService = Depends(get_presence_service),
    scheduler: RetryScheduler = Depends(get_retry_scheduler),
):
    """Manually retry a durable delivery now, or defer it until the recipient is online"""
    delivery = await db.get(FileDelivery, delivery_id)
    if delivery is None:
        raise NotFoundError("Delivery not found")

    if current_user.id not in (delivery.sender_id, delivery.recipient_id):
        raise AccessDeniedError("Unauthorized to retry this delivery")

    if delivery.status == DeliveryState.DELIVERED:
        raise ValidationError("Delivery already completed")

    if delivery.delivery_attempts >= scheduler.max_retries:
        raise RetryExhaustedError("Maximum retry attempts exceeded", {"delivery_id": str(delivery.id)})

    if delivery.expires_at <= utcnow():
        raise ValidationError("Delivery has expired")

    if not await presence.is_recently_online(db, delivery.recipient_id):
        return JSONResponse(
            status_code=202,
            content={
                "detail": "Recipient is not online. Retry will be attempted when they come online.",
                "will_retry_later": True,
            },
        )

    attempt_number = delivery.delivery_attempts + 1
    await log_audit_event(
        db, "DELIVERY_RETRY", user_id=current_user.id, resource="file_delivery", resource_id=delivery.id,
        details={"attempt_number": attempt_number}, severity=AuditSeverity.MEDIUM,
    )
    await db.commit()

    # The retry runs in its own session after this response goes out
    scheduler.schedule_single(delivery.id)
    return {
        "success": True,
        "message": "Delivery retry initiated",
        "delivery_id": str(delivery.id),
        "attempt_number": attempt_number,
    }
