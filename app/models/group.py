from sqlalchemy import Column, String, Text, ForeignKey, Table, Uuid
from sqlalchemy.orm import relationship
import uuid
from app.db.base import Base, TimestampMixin

group_members = Table(
    "group_members",
    Base.metadata,
    Column("group_id", Uuid, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)

class Group(Base, TimestampMixin):
    """A named set of users a file can be shared with in one go"""
    __tablename__ = "groups"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    creator_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    # Relationships
    creator = relationship("User", foreign_keys=[creator_id])
    members = relationship("User", secondary=group_members, back_populates="groups")
    shares = relationship("FileShare", back_populates="group")

    def has_member(self, user_id) -> bool:
        return self.creator_id == user_id or any(m.id == user_id for m in self.members)
