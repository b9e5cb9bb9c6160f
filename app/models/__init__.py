from app.models.group import Group, group_members
from app.models.user import User
from app.models.file import File
from app.models.share import FileShare
from app.models.delivery import FileDelivery
from app.models.presence import UserPresence
from app.models.audit import AuditLog

__all__ = [
    "Group",
    "group_members",
    "User",
    "File",
    "FileShare",
    "FileDelivery",
    "UserPresence",
    "AuditLog",
]
