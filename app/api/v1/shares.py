import logging
import uuid
from datetime import datetime
from typing import List, Literal
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from app.api.deps import get_delivery_tracker, get_notifier
from app.api.v1.auth import get_current_user
from app.config import settings
from app.core.exceptions import NotFoundError
from app.core.rate_limit import limiter
from app.db.session import get_db
from app.models.audit import AuditSeverity
from app.models.file import File
from app.models.share import FileShare, Permission, ShareType
from app.models.user import User
from app.services import file_deliveries
from app.services.audit import log_audit_event
from app.services.delivery_tracker import DeliveryTracker
from app.services.notifier import Notifier
from app.services.share_store import share_store

logger = logging.getLogger(__name__)

router = APIRouter()

class ShareCreate(BaseModel):
    file_id: uuid.UUID
    recipients: List[str] = []
    groups: List[uuid.UUID] = []
    permissions: List[Literal["VIEW", "DOWNLOAD", "EDIT"]] = [Permission.VIEW]
    expires_at: datetime | None = None
    password: str | None = None
    max_access_count: int | None = Field(default=None, ge=1)

class ShareDecision(BaseModel):
    action: Literal["accept", "reject"]

class BulkRevoke(BaseModel):
    share_ids: List[uuid.UUID]

class AccessRequest(BaseModel):
    event_type: Literal["VIEW", "PREVIEW", "DOWNLOAD"] = "VIEW"
    password: str | None = None

def share_to_dict(share: FileShare, file: File) -> dict:
    return {
        "id": str(share.id),
        "file": {
            "id": str(file.id),
            "filename": file.filename,
            "original_filename": file.original_filename,
            "size_bytes": file.size_bytes,
            "mime_type": file.mime_type,
            "encrypted": file.encrypted,
        },
        "sender": {
            "id": str(share.sender_user_id),
            "name": share.sender_name,
            "email": share.sender_email,
        },
        "share_type": share.share_type,
        "recipient_email": share.recipient_email,
        "group_id": str(share.group_id) if share.group_id else None,
        "permissions": share.permissions,
        "has_password": bool(share.password_hash),
        "expires_at": share.expires_at.isoformat() if share.expires_at else None,
        "max_access_count": share.max_access_count,
        "access_count": share.access_count,
        "view_count": share.view_count,
        "download_count": share.download_count,
        "last_accessed_at": share.last_accessed_at.isoformat() if share.last_accessed_at else None,
        "revoked": share.revoked,
        "created_at": share.created_at.isoformat() if share.created_at else None,
    }

@router.post("/", status_code=201)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def create_shares(
    request: Request,
    share_data: ShareCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    tracker: DeliveryTracker = Depends(get_delivery_tracker),
    notifier: Notifier = Depends(get_notifier),
):
    """Share a file with registered users (by email) and groups, reporting per recipient"""
    file = await share_store.get_owned_file(db, share_data.file_id, current_user)

    batch = await share_store.share_with_recipients(
        db,
        file,
        current_user,
        share_data.recipients,
        groups=share_data.groups,
        permissions=share_data.permissions,
        expires_at=share_data.expires_at,
        password=share_data.password,
        max_access_count=share_data.max_access_count,
    )

    for result in batch.successful:
        share = result.share
        if result.share_type == ShareType.USER:
            result.delivery_id = tracker.track_delivery(
                share.id,
                current_user.id,
                result.recipient.id,
                share.recipient_email,
                notification_channels=settings.DEFAULT_NOTIFICATION_CHANNELS,
            )
        await log_audit_event(
            db,
            "FILE_SHARE",
            user_id=current_user.id,
            resource="file_share",
            resource_id=share.id,
            details={
                "file_id": str(file.id),
                "share_type": share.share_type,
                "recipient_email": share.recipient_email,
                "group_id": str(share.group_id) if share.group_id else None,
                "permissions": share.permissions,
            },
            severity=AuditSeverity.MEDIUM,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )

    # Recipients must never be told about a share that is not stored yet
    await db.commit()

    for result in batch.successful:
        if result.delivery_id:
            await tracker.send(result.delivery_id)
        else:
            notifier.emit("file-shared", {
                "share_id": str(result.share.id),
                "file_id": str(file.id),
                "filename": file.filename,
                "group_id": result.group_id,
                "group_name": result.group_name,
                "sender": {"id": str(current_user.id), "name": current_user.name, "email": current_user.email},
            })

    return {
        "successful_shares": batch.successful_shares,
        "failed_shares": batch.failed_shares,
        "total_recipients": len(batch.results),
        "message": batch.message,
        "results": [r.to_dict() for r in batch.results],
    }

@router.get("/sent")
async def get_sent_shares(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get all shares created by the caller"""
    rows = await share_store.list_sent(db, current_user)
    return [share_to_dict(share, file) for share, file in rows]

@router.get("/received")
async def get_received_shares(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get active shares addressed to the caller, directly or through a group"""
    rows = await share_store.list_received(db, current_user, limit=limit, offset=offset)
    return {
        "shares": [share_to_dict(share, file) for share, file in rows],
        "limit": limit,
        "offset": offset,
    }

@router.put("/received/{share_id}")
async def respond_to_share(
    share_id: uuid.UUID,
    decision: ShareDecision,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Accept or reject a received share. Rejecting revokes it."""
    share = await share_store.get_share(db, share_id)
    if not share_store.is_recipient(share, current_user):
        raise NotFoundError("File share not found or access denied")

    if decision.action == "accept":
        delivery = await file_deliveries.complete_for_share(db, share.id)
        await log_audit_event(
            db, "FILE_SHARE_ACCEPT", user_id=current_user.id, resource="file_share", resource_id=share.id,
            details={"operation": "accept"},
        )
        await db.commit()
        if delivery is not None:
            notifier.emit("delivery-completed", {
                "delivery_id": str(delivery.id),
                "file_id": str(delivery.file_id),
                "sender_id": str(delivery.sender_id),
                "recipient_id": str(delivery.recipient_id),
                "status": "delivered",
                "delivered_at": delivery.delivered_at.isoformat(),
            })
        return {"success": True, "message": "File share accepted successfully", "action": "accept"}

    share = await share_store.revoke_share(db, share.id, current_user, as_recipient=True)
    await log_audit_event(
        db, "FILE_SHARE_REJECT", user_id=current_user.id, resource="file_share", resource_id=share.id,
        details={"operation": "reject"}, severity=AuditSeverity.MEDIUM,
    )
    await db.commit()
    notifier.emit("share-revoked", {"share_id": str(share.id), "file_id": str(share.file_id), "reason": "rejected"})
    return {"success": True, "message": "File share rejected successfully", "action": "reject"}

@router.post("/bulk-revoke")
async def bulk_revoke_shares(
    payload: BulkRevoke,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Revoke many of the caller's shares at once"""
    revoked = await share_store.bulk_revoke(db, payload.share_ids, current_user)
    await log_audit_event(
        db, "FILE_SHARE_BULK_REVOKE", user_id=current_user.id, resource="file_share",
        details={"requested": len(payload.share_ids), "revoked": revoked}, severity=AuditSeverity.MEDIUM,
    )
    await db.commit()
    if revoked:
        notifier.emit("share-revoked", {"share_ids": [str(i) for i in payload.share_ids], "reason": "bulk"})
    return {"success": True, "revoked_count": revoked}

@router.post("/{share_id}/revoke")
async def revoke_share(
    share_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Soft-delete a share. Revoking twice is harmless."""
    share = await share_store.revoke_share(db, share_id, current_user)
    await log_audit_event(
        db, "FILE_SHARE_REVOKE", user_id=current_user.id, resource="file_share", resource_id=share.id,
        severity=AuditSeverity.MEDIUM,
    )
    await db.commit()
    notifier.emit("share-revoked", {"share_id": str(share.id), "file_id": str(share.file_id), "reason": "revoked"})
    return {
        "success": True,
        "share_id": str(share.id),
        "revoked": share.revoked,
        "revoked_at": share.revoked_at.isoformat() if share.revoked_at else None,
    }

@router.post("/{share_id}/access")
async def record_share_access(
    share_id: uuid.UUID,
    access: AccessRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Count a view/preview/download of a share; opening it also completes its delivery"""
    share = await share_store.record_access(db, share_id, access.event_type, current_user, password=access.password)

    delivery = await file_deliveries.complete_for_share(db, share.id)
    await log_audit_event(
        db,
        "FILE_ACCESS",
        user_id=current_user.id,
        resource="file_share",
        resource_id=share.id,
        details={"event_type": access.event_type, "access_count": share.access_count},
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    await db.commit()

    if delivery is not None:
        notifier.emit("delivery-completed", {
            "delivery_id": str(delivery.id),
            "file_id": str(delivery.file_id),
            "sender_id": str(delivery.sender_id),
            "recipient_id": str(delivery.recipient_id),
            "status": "delivered",
            "delivered_at": delivery.delivered_at.isoformat(),
        })

    return {
        "success": True,
        "share_id": str(share.id),
        "event_type": access.event_type,
        "access_count": share.access_count,
        "view_count": share.view_count,
        "download_count": share.download_count,
        "max_access_count": share.max_access_count,
        "last_accessed_at": share.last_accessed_at.isoformat() if share.last_accessed_at else None,
    }
