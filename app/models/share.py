from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, Boolean, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base, TimestampMixin

class ShareType:
    USER = "USER"
    GROUP = "GROUP"

class Permission:
    VIEW = "VIEW"
    DOWNLOAD = "DOWNLOAD"
    EDIT = "EDIT"

    ALL = (VIEW, DOWNLOAD, EDIT)

class AccessEventType:
    VIEW = "VIEW"
    PREVIEW = "PREVIEW"
    DOWNLOAD = "DOWNLOAD"

class FileShare(Base, TimestampMixin):
    """Share record - links a file, its sender and one recipient or group"""
    __tablename__ = "file_shares"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # What's being shared
    file_id = Column(Uuid, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True)

    # Sender (Who's sharing)
    sender_user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_name = Column(String(255))
    sender_email = Column(String(255))

    # Recipient (a user or a group, never both)
    share_type = Column(String(20), default=ShareType.USER, nullable=False)  # USER, GROUP
    recipient_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), index=True)
    recipient_email = Column(String(255), index=True)
    group_id = Column(Uuid, ForeignKey("groups.id", ondelete="CASCADE"))

    # Permissions
    permissions = Column(JSON().with_variant(JSONB(), "postgresql"), default=lambda: [Permission.VIEW])

    # Constraints
    password_hash = Column(String(255))
    expires_at = Column(DateTime)
    max_access_count = Column(Integer)

    # Counters
    access_count = Column(Integer, default=0, nullable=False)
    view_count = Column(Integer, default=0, nullable=False)
    download_count = Column(Integer, default=0, nullable=False)
    last_accessed_at = Column(DateTime)

    # Soft delete
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime)

    # Relationships
    file = relationship("File", back_populates="shares")
    sender = relationship("User", foreign_keys=[sender_user_id], back_populates="sent_shares")
    recipient = relationship("User", foreign_keys=[recipient_user_id], back_populates="received_shares")
    group = relationship("Group", back_populates="shares")
    delivery = relationship("FileDelivery", back_populates="share", uselist=False)

    def inactive_reason(self, now) -> str | None:
        if self.revoked:
            return "Share has been revoked"
        if self.expires_at is not None and self.expires_at <= now:
            return "Share has expired"
        if self.max_access_count is not None and (self.access_count or 0) >= self.max_access_count:
            return "Share access limit reached"
        return None

    def is_active(self, now) -> bool:
        return self.inactive_reason(now) is None
