from sqlalchemy import Column, String, Boolean, BigInteger, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base, TimestampMixin

class File(Base, TimestampMixin):
    __tablename__ = "files"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # File Info
    filename = Column(String(500), nullable=False)
    original_filename = Column(String(500), nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    mime_type = Column(String(100), nullable=False)

    # Storage (bytes live in the object store, we only keep the URL)
    url = Column(Text, nullable=False)

    # Encryption
    encrypted = Column(Boolean, default=False)
    encryption_key_id = Column(String(255))

    # Relationships
    owner = relationship("User", back_populates="files")
    shares = relationship("FileShare", back_populates="file", cascade="all, delete-orphan")
    deliveries = relationship("FileDelivery", back_populates="file", cascade="all, delete-orphan")
