from sqlalchemy import Column, DateTime
from sqlalchemy.orm import declarative_base
from app.core.time_utils import utcnow

Base = declarative_base()

class TimestampMixin:
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
