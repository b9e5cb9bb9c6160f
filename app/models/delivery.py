from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, Text, Uuid
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base, TimestampMixin

class DeliveryState:
    PENDING = "PENDING"
    FAILED = "FAILED"
    DELIVERED = "DELIVERED"

    RETRYABLE = (PENDING, FAILED)

class FileDelivery(Base, TimestampMixin):
    """Durable delivery record, retried when the recipient comes online"""
    __tablename__ = "file_deliveries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    file_id = Column(Uuid, ForeignKey("files.id", ondelete="CASCADE"), nullable=False)
    share_id = Column(Uuid, ForeignKey("file_shares.id", ondelete="SET NULL"), unique=True)
    sender_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    recipient_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(String(20), default=DeliveryState.PENDING, nullable=False, index=True)
    delivery_attempts = Column(Integer, default=0, nullable=False)
    failure_reason = Column(Text)

    last_retry_at = Column(DateTime)
    expires_at = Column(DateTime, nullable=False)
    delivered_at = Column(DateTime)

    # Optimistic concurrency: concurrent writers raise StaleDataError
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    file = relationship("File", back_populates="deliveries")
    share = relationship("FileShare", back_populates="delivery")
    sender = relationship("User", foreign_keys=[sender_id])
    recipient = relationship("User", foreign_keys=[recipient_id])
