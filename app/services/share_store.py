"""
Durable share records.

A request to share one file with N recipients fans out into N independent
``create_share`` calls, each inside its own SAVEPOINT, so a failing recipient
never takes the others down with it. Access to a share is enforced here with
a conditional UPDATE: a share at its limit, revoked or expired is never
counted again.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Union

from sqlalchemy import select, update, or_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.exceptions import (
    AccessDeniedError,
    DirectoryUnavailableError,
    FileShareError,
    NotFoundError,
    ValidationError,
)
from app.core.security import get_password_hash, verify_password
from app.core.time_utils import utcnow
from app.models.file import File
from app.models.group import Group, group_members
from app.models.share import AccessEventType, FileShare, Permission, ShareType
from app.models.user import User
from app.services import file_deliveries
from app.services.recipient_validator import RecipientClass, normalize_email, validate_recipient
from app.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class UserShareTarget:
    email: str
    user: User


@dataclass
class GroupShareTarget:
    group_id: uuid.UUID


ShareTarget = Union[UserShareTarget, GroupShareTarget]


@dataclass
class ShareResult:
    success: bool
    share_type: str
    email: Optional[str] = None
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    share: Optional[FileShare] = None
    recipient: Optional[User] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    delivery_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "share_type": self.share_type,
            "email": self.email,
            "group_id": self.group_id,
        }
        if self.group_name:
            data["group_name"] = self.group_name
        if self.share is not None:
            data["share_id"] = str(self.share.id)
        if self.delivery_id:
            data["delivery_id"] = self.delivery_id
        if not self.success:
            data["error"] = self.error
            data["error_code"] = self.error_code
        return data


@dataclass
class ShareBatchResult:
    results: List[ShareResult] = field(default_factory=list)

    @property
    def successful(self) -> List[ShareResult]:
        return [r for r in self.results if r.success]

    @property
    def successful_shares(self) -> int:
        return len(self.successful)

    @property
    def failed_shares(self) -> int:
        return len(self.results) - self.successful_shares

    @property
    def message(self) -> str:
        ok, failed = self.successful_shares, self.failed_shares
        if ok and not failed:
            return f"File shared successfully with {ok} recipient(s)"
        if ok and failed:
            return f"File shared with {ok} recipient(s), {failed} failed"
        if failed:
            return f"Sharing failed for {failed} recipient(s)"
        return "No recipients given"


def _failure(share_type: str, error: str, code: str, email: str | None = None, group_id: str | None = None) -> ShareResult:
    return ShareResult(success=False, share_type=share_type, email=email, group_id=group_id, error=error, error_code=code)


class ShareStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    async def get_owned_file(self, db: AsyncSession, file_id, owner: User) -> File:
        file = await db.get(File, file_id)
        if file is None:
            raise NotFoundError("File not found")
        if file.owner_user_id != owner.id:
            raise AccessDeniedError("Only the owner can share this file")
        return file

    async def get_share(self, db: AsyncSession, share_id) -> FileShare:
        result = await db.execute(
            select(FileShare)
            .options(selectinload(FileShare.group).selectinload(Group.members), selectinload(FileShare.file))
            .where(FileShare.id == share_id)
        )
        share = result.scalar_one_or_none()
        if share is None:
            raise NotFoundError("Share not found")
        return share

    async def create_share(
        self,
        db: AsyncSession,
        file: File,
        creator: User,
        target: ShareTarget,
        permissions: Sequence[str],
        expires_at: datetime | None = None,
        password: str | None = None,
        max_access_count: int | None = None,
    ) -> FileShare:
        permissions = self._check_constraints(permissions, expires_at, max_access_count)

        share = FileShare(
            file_id=file.id,
            sender_user_id=creator.id,
            sender_name=creator.name,
            sender_email=creator.email,
            permissions=permissions,
            password_hash=get_password_hash(password) if password else None,
            expires_at=expires_at,
            max_access_count=max_access_count,
            access_count=0,
            view_count=0,
            download_count=0,
            revoked=False,
        )

        if isinstance(target, UserShareTarget):
            share.share_type = ShareType.USER
            share.recipient_user_id = target.user.id
            share.recipient_email = normalize_email(target.email)
        elif isinstance(target, GroupShareTarget):
            group = await self._get_group(db, target.group_id)
            if not group.has_member(creator.id):
                raise AccessDeniedError("Access denied: not a member of this group")
            share.share_type = ShareType.GROUP
            share.group = group
        else:
            raise TypeError(f"Unsupported share target: {type(target).__name__}")

        db.add(share)
        await db.flush()

        if share.share_type == ShareType.USER:
            file_deliveries.create_for_share(db, share, self.clock())
            await db.flush()

        logger.info(f"Share {share.id} created for file {file.id} ({share.share_type})")
        return share

    async def share_with_recipients(
        self,
        db: AsyncSession,
        file: File,
        creator: User,
        recipients: Sequence[str],
        groups: Sequence = (),
        permissions: Sequence[str] = (Permission.VIEW,),
        expires_at: datetime | None = None,
        password: str | None = None,
        max_access_count: int | None = None,
    ) -> ShareBatchResult:
        """Share ``file`` with every recipient and group, reporting per item"""
        self._check_constraints(permissions, expires_at, max_access_count)

        batch = ShareBatchResult()
        directory = UserDirectory(db)
        seen = set()

        for raw_email in recipients:
            try:
                validation = await validate_recipient(directory, raw_email, creator)
            except DirectoryUnavailableError as e:
                batch.results.append(_failure(ShareType.USER, e.message, e.error_code, email=raw_email))
                continue

            if validation.classification == RecipientClass.INVALID:
                batch.results.append(_failure(ShareType.USER, validation.reason, "INVALID_RECIPIENT", email=raw_email))
                continue
            if validation.classification == RecipientClass.NOT_REGISTERED:
                batch.results.append(_failure(ShareType.USER, validation.reason, "NOT_REGISTERED", email=raw_email))
                continue
            if validation.normalized in seen:
                batch.results.append(_failure(ShareType.USER, "Duplicate recipient", "DUPLICATE_RECIPIENT", email=raw_email))
                continue
            seen.add(validation.normalized)

            target = UserShareTarget(email=validation.normalized, user=validation.user)
            result = await self._create_isolated(
                db, file, creator, target, permissions, expires_at, password, max_access_count,
            )
            result.email = raw_email
            result.recipient = validation.user
            batch.results.append(result)

        for group_id in groups:
            target = GroupShareTarget(group_id=group_id)
            result = await self._create_isolated(
                db, file, creator, target, permissions, expires_at, password, max_access_count,
            )
            result.group_id = str(group_id)
            if result.share is not None and result.share.group is not None:
                result.group_name = result.share.group.name
            batch.results.append(result)

        logger.info(
            f"Shared file {file.id}: {batch.successful_shares} succeeded, {batch.failed_shares} failed"
        )
        return batch

    async def _create_isolated(self, db, file, creator, target, permissions, expires_at, password, max_access_count) -> ShareResult:
        share_type = ShareType.USER if isinstance(target, UserShareTarget) else ShareType.GROUP
        try:
            async with db.begin_nested():
                share = await self.create_share(
                    db, file, creator, target, permissions,
                    expires_at=expires_at, password=password, max_access_count=max_access_count,
                )
        except FileShareError as e:
            return _failure(share_type, e.message, e.error_code)
        except SQLAlchemyError as e:
            logger.error(f"Share creation failed for file {file.id}: {e}", exc_info=True)
            return _failure(share_type, "Share failed: storage temporarily unavailable", "SERVICE_UNAVAILABLE")
        return ShareResult(success=True, share_type=share_type, share=share)

    async def revoke_share(self, db: AsyncSession, share_id, actor: User, as_recipient: bool = False) -> FileShare:
        """
        Soft delete. Revoking an already revoked share is a no-op.

        Only the sender may revoke, unless ``as_recipient`` is set (a reject),
        which also lets the direct recipient or an admin through.
        """
        share = await self.get_share(db, share_id)
        allowed = share.sender_user_id == actor.id
        if as_recipient:
            allowed = allowed or self._is_direct_recipient(share, actor) or actor.is_admin
        if not allowed:
            raise AccessDeniedError("Not allowed to revoke this share")
        if not share.revoked:
            share.revoked = True
            share.revoked_at = self.clock()
            await db.flush()
            logger.info(f"Share {share.id} revoked by {actor.id}")
        return share

    async def bulk_revoke(self, db: AsyncSession, share_ids: Sequence, actor: User) -> int:
        if not share_ids:
            return 0
        result = await db.execute(
            update(FileShare)
            .where(
                FileShare.id.in_(list(share_ids)),
                FileShare.sender_user_id == actor.id,
                FileShare.revoked.is_(False),
            )
            .values(revoked=True, revoked_at=self.clock(), updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def record_access(
        self,
        db: AsyncSession,
        share_id,
        event_type: str,
        actor: User,
        password: str | None = None,
    ) -> FileShare:
        share = await self.get_share(db, share_id)

        if not self.is_recipient(share, actor):
            raise AccessDeniedError("Not a recipient of this share")

        required = {Permission.DOWNLOAD} if event_type == AccessEventType.DOWNLOAD else {Permission.VIEW, Permission.DOWNLOAD}
        if not required.intersection(share.permissions or []):
            raise AccessDeniedError(f"Share does not grant {event_type} access")

        if share.password_hash and not (password and verify_password(password, share.password_hash)):
            raise AccessDeniedError("Invalid share password")

        now = self.clock()
        values = {
            "access_count": FileShare.access_count + 1,
            "last_accessed_at": now,
            "updated_at": now,
        }
        if event_type in (AccessEventType.VIEW, AccessEventType.PREVIEW):
            values["view_count"] = FileShare.view_count + 1
        elif event_type == AccessEventType.DOWNLOAD:
            values["download_count"] = FileShare.download_count + 1

        result = await db.execute(
            update(FileShare)
            .where(
                FileShare.id == share.id,
                FileShare.revoked.is_(False),
                or_(FileShare.expires_at.is_(None), FileShare.expires_at > now),
                or_(FileShare.max_access_count.is_(None), FileShare.access_count < FileShare.max_access_count),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(share)

        if not result.rowcount:
            reason = share.inactive_reason(now) or "Share is not active"
            logger.warning(f"Access to share {share.id} denied: {reason}")
            raise AccessDeniedError(reason)

        return share

    async def list_received(self, db: AsyncSession, user: User, limit: int = 50, offset: int = 0):
        now = self.clock()
        member_of = select(group_members.c.group_id).where(group_members.c.user_id == user.id)
        result = await db.execute(
            select(FileShare, File)
            .join(File, FileShare.file_id == File.id)
            .where(
                or_(
                    FileShare.recipient_user_id == user.id,
                    func.lower(FileShare.recipient_email) == user.email.lower(),
                    FileShare.group_id.in_(member_of),
                ),
                FileShare.revoked.is_(False),
                or_(FileShare.expires_at.is_(None), FileShare.expires_at > now),
            )
            .order_by(FileShare.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return result.all()

    async def list_sent(self, db: AsyncSession, user: User):
        result = await db.execute(
            select(FileShare, File)
            .join(File, FileShare.file_id == File.id)
            .where(FileShare.sender_user_id == user.id)
            .order_by(FileShare.created_at.desc())
        )
        return result.all()

    def is_recipient(self, share: FileShare, user: User) -> bool:
        if share.share_type == ShareType.GROUP:
            return share.group is not None and share.group.has_member(user.id)
        return self._is_direct_recipient(share, user)

    @staticmethod
    def _is_direct_recipient(share: FileShare, user: User) -> bool:
        if share.recipient_user_id is not None:
            return share.recipient_user_id == user.id
        return bool(share.recipient_email) and share.recipient_email == normalize_email(user.email)

    async def _get_group(self, db: AsyncSession, group_id) -> Group:
        result = await db.execute(select(Group).options(selectinload(Group.members)).where(Group.id == group_id))
        group = result.scalar_one_or_none()
        if group is None:
            raise NotFoundError("Group not found")
        return group

    def _check_constraints(self, permissions, expires_at, max_access_count) -> list:
        permissions = list(dict.fromkeys(permissions or []))
        if not permissions:
            raise ValidationError("At least one permission is required")
        unknown = [p for p in permissions if p not in Permission.ALL]
        if unknown:
            raise ValidationError(f"Permissions must be one of: {', '.join(Permission.ALL)}")
        if max_access_count is not None and max_access_count < 1:
            raise ValidationError("Max access count must be a positive integer")
        if expires_at is not None and expires_at <= self.clock():
            raise ValidationError("Expiration date must be in the future")
        return permissions


share_store = ShareStore()
