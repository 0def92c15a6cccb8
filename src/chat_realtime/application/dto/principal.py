from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated relay caller extracted from the JWT."""

    user_id: str
    username: str | None = None
    roles: list[str] = field(default_factory=list)

    def may_act_as(self, user_id: str) -> bool:
        return self.user_id == user_id
