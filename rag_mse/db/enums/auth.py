"""Auth-related enums."""

from enum import Enum


class Role(str, Enum):
    """
    Member roles.

    - MEMBER: regular association member
    - ADMIN: manages members, invitations, events and the mail outbox
    """

    MEMBER = "MEMBER"
    ADMIN = "ADMIN"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_
