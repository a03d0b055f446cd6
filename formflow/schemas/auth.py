"""Authentication-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel

from formflow.db.enums import Role


class UserSession(BaseModel):
    """
    Full session context for authenticated requests.

    This is returned by get_current_session dependency
    and contains all information needed for authorization.
    """
    user_id: UUID
    org_id: UUID
    role: Role  # Validated enum
    email: str
    display_name: str

    @property
    def can_see_all_templates(self) -> bool:
        from formflow.db.enums import ROLES_CAN_SEE_ALL_TEMPLATES
        return self.role in ROLES_CAN_SEE_ALL_TEMPLATES
