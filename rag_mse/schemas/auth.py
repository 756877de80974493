"""Pydantic schemas for the caller identity."""

from uuid import UUID

from pydantic import BaseModel

from rag_mse.db.enums import Role


class UserSession(BaseModel):
    """
    Caller identity for authenticated requests.

    Returned by the get_current_session dependency and passed explicitly to
    every service call that acts on behalf of a user.
    """
    user_id: UUID
    role: Role  # Validated enum
    email: str
    name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
