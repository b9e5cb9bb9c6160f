from sqlalchemy import Column, String, DateTime, Text, Uuid, JSON
from sqlalchemy.dialects.postgresql import JSONB
import uuid
from app.db.base import Base
from app.core.time_utils import utcnow

class AuditSeverity:
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    user_id = Column(Uuid, index=True)
    action = Column(String(50), nullable=False)  # FILE_SHARE, SHARE_REVOKE, FILE_ACCESS ...
    resource = Column(String(50))
    resource_id = Column(String(100))
    details = Column(JSON().with_variant(JSONB(), "postgresql"), default=dict)
    severity = Column(String(20), default=AuditSeverity.LOW)
    ip_address = Column(String(50))
    user_agent = Column(Text)
