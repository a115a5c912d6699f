from __future__ import annotations

from dataclasses import dataclass

STAFF_ROLES = frozenset({"admin", "instructor"})


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated identity extracted from a validated JWT.

    Carried through the request via FastAPI's dependency system.
    Endpoints receive this instead of a raw subject string.

        user_id: subject from JWT; for learners this is the student_id
        roles:   platform roles (student, instructor, admin)
    """

    user_id: str
    roles: frozenset[str]

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: set[str] | frozenset[str]) -> bool:
        return bool(self.roles & roles)

    def is_staff(self) -> bool:
        return self.has_any_role(STAFF_ROLES)

    def can_read_student(self, student_id: str) -> bool:
        return self.user_id == student_id or self.is_staff()
