from __future__ import annotations

from dataclasses import dataclass, field

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    """Caller identity resolved from a verified access token."""

    user_id: int
    roles: frozenset[str] = field(default_factory=frozenset)
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles

    @property
    def label(self) -> str:
        return self.email or f"user:{self.user_id}"
