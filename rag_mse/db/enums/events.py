"""Event and attendance enums."""

from enum import Enum


class VoteType(str, Enum):
    """Attendance answer for an event."""

    JA = "JA"
    NEIN = "NEIN"
    VIELLEICHT = "VIELLEICHT"

    @classmethod
    def has_value(cls, value: str) -> bool:
        return value in cls._value2member_map_
