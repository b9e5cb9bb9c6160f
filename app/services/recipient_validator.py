import re
from dataclasses import dataclass
from app.models.user import User
from app.services.user_directory import UserDirectory

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

class RecipientClass:
    VALID = "valid"
    NOT_REGISTERED = "not-registered"
    INVALID = "invalid"

@dataclass
class RecipientValidation:
    raw: str
    normalized: str
    classification: str
    user: User | None = None
    reason: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.classification == RecipientClass.VALID

def normalize_email(raw_email: str) -> str:
    return (raw_email or "").strip().lower()

async def validate_recipient(directory: UserDirectory, raw_email: str, acting_user: User) -> RecipientValidation:
    """
    Classify a recipient email as valid, not-registered or invalid.

    Malformed input never raises. A DirectoryUnavailableError from the
    directory is left to the caller, which must not treat it as "not found".
    """
    normalized = normalize_email(raw_email)

    if not EMAIL_PATTERN.match(normalized):
        return RecipientValidation(raw_email, normalized, RecipientClass.INVALID, reason="Invalid email format")

    if acting_user.email and normalized == acting_user.email.strip().lower():
        return RecipientValidation(raw_email, normalized, RecipientClass.INVALID, reason="Cannot share a file with yourself")

    user = await directory.find_by_email(normalized)
    if user is None:
        return RecipientValidation(
            raw_email, normalized, RecipientClass.NOT_REGISTERED, reason="User not registered in the system"
        )

    return RecipientValidation(raw_email, normalized, RecipientClass.VALID, user=user)
