"""Role policy: a total order over roles used for every permission check."""

from __future__ import annotations

from enum import IntEnum


class Role(IntEnum):
    GUEST = 0
    USER = 1
    MODERATOR = 2
    ADMIN = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, value, default: Role | None = None) -> Role:
        """Accept ``"Admin"``, ``"admin"``, ``3`` or a ``Role``."""
        if isinstance(value, Role):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        elif isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
        if default is not None:
            return default
        raise ValueError(f"unknown role {value!r}")


def has_permission(role: Role, required: Role) -> bool:
    """True when ``role`` ranks at or above ``required``."""
    return int(role) >= int(required)
