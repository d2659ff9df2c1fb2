"""The staff member (or the system) on whose behalf an operation runs."""
from dataclasses import dataclass
from typing import Optional

from laundry_ops.domain.enums import StaffRole

ADMIN_ROLES = frozenset({StaffRole.SUPER_ADMIN, StaffRole.OPERATION_MANAGER})


@dataclass(frozen=True)
class Actor:
    """
    Authenticated caller identity.

    Authentication happens outside the core; services trust what they are given.
    """

    staff_id: Optional[int]
    role: StaffRole
    email: Optional[str] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(staff_id=None, role=StaffRole.SYSTEM)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES
