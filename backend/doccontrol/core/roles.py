"""User roles as a closed enumeration with a privilege level."""

from __future__ import annotations

import enum


class Role(str, enum.Enum):
    SUPERADMIN = "SUPERADMIN"
    ADMIN = "ADMIN"
    USER = "USER"

    @property
    def level(self) -> int:
        return _LEVELS[self]

    @classmethod
    def at_least(cls, role: Role) -> frozenset[Role]:
        """All roles whose level is >= role.level (e.g. ADMIN -> {ADMIN, SUPERADMIN})."""
        return frozenset(r for r in cls if r.level >= role.level)

    @classmethod
    def parse(cls, value: str | None) -> Role | None:
        if not value:
            return None
        try:
            return cls(value.upper())
        except ValueError:
            return None


_LEVELS = {
    Role.SUPERADMIN: 100,
    Role.ADMIN: 90,
    Role.USER: 10,
}

ADMIN_ROLES = Role.at_least(Role.ADMIN)
