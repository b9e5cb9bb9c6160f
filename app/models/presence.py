from sqlalchemy import Column, Boolean, DateTime, Integer, ForeignKey, Uuid
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base
from app.core.time_utils import utcnow

class UserPresence(Base):
    __tablename__ = "user_presence"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    is_online = Column(Boolean, default=False, nullable=False)
    last_seen = Column(DateTime, default=utcnow, nullable=False)
    connection_count = Column(Integer, default=0, nullable=False)

    user = relationship("User", back_populates="presence")
