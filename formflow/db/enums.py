"""Enum definitions for application constants."""

from enum import Enum


class Role(str, Enum):
    """
    Recruiter roles.

    - RECRUITER: manages own templates and invitations for own applications
    - ADMIN: sees every template in the organization
    """
    RECRUITER = "recruiter"
    ADMIN = "admin"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


class FormFieldType(str, Enum):
    """Field types supported by the form builder."""
    SHORT_TEXT = "short_text"
    LONG_TEXT = "long_text"
    EMAIL = "email"
    YES_NO = "yes_no"
    SELECT = "select"
    DATE = "date"
    FILE = "file"


class FormInvitationStatus(str, Enum):
    """
    Lifecycle of a form invitation.

        pending → sent → viewed → answered
        pending/sent → failed
        pending/sent/viewed → expired

    answered, expired and failed are terminal.
    """
    PENDING = "pending"
    SENT = "sent"
    VIEWED = "viewed"
    ANSWERED = "answered"
    EXPIRED = "expired"
    FAILED = "failed"

    @classmethod
    def active(cls) -> list["FormInvitationStatus"]:
        return [cls.PENDING, cls.SENT, cls.VIEWED]

    @classmethod
    def active_values(cls) -> list[str]:
        return [s.value for s in cls.active()]

    @property
    def is_terminal(self) -> bool:
        return self not in self.active()


class QuotaKind(str, Enum):
    """Per-recruiter daily counters."""
    INVITATIONS_SENT = "invitations_sent"
    AI_SUGGESTIONS = "ai_suggestions"


ROLES_CAN_SEE_ALL_TEMPLATES = {Role.ADMIN}
