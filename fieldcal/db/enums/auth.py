"""Auth-related enums."""

from enum import Enum


class CalendarRole(str, Enum):
    """Calendar access role of a user within their organization."""

    OWNER = "owner"
    ADMIN = "admin"
    WORKER = "worker"
    READ_ONLY = "read_only"

    @classmethod
    def has_value(cls, value: str) -> bool:
        return value in cls._value2member_map_
