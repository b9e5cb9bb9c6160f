from sqlalchemy import Column, String, Boolean, DateTime, Uuid
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base, TimestampMixin
from app.models.group import group_members

class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # Role & Status
    role = Column(String(50), default="user")  # user, admin
    is_active = Column(Boolean, default=True)

    # Profile
    avatar_url = Column(String(500))

    # Timestamps
    last_login = Column(DateTime)
    deleted_at = Column(DateTime)

    # Relationships
    files = relationship("File", back_populates="owner", cascade="all, delete-orphan")
    sent_shares = relationship("FileShare", foreign_keys="FileShare.sender_user_id", back_populates="sender")
    received_shares = relationship("FileShare", foreign_keys="FileShare.recipient_user_id", back_populates="recipient")
    groups = relationship("Group", secondary=group_members, back_populates="members")
    presence = relationship("UserPresence", back_populates="user", uselist=False)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
