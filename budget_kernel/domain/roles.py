"""
Role domain types (``budget_kernel.domain.roles``).

Responsibility
--------------
The closed set of approver roles and the single mapping table from raw role
strings (as stored by the external user/role directory) to canonical roles.
Raw strings are resolved ONCE, at the boundary, by ``resolve_actor`` or
``normalize_role``; everything past that point compares ``Role`` members.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  The role directory itself is an
external collaborator reached through the ``RoleDirectory`` protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from budget_kernel.exceptions import UnknownRoleError


class Role(str, Enum):
    """Canonical actor roles."""

    ORGANIZATION_ADMIN = "organization_admin"
    REGIONAL_ADMIN = "regional_admin"
    FINANCE_OFFICER = "finance_officer"
    SUPER_ADMIN = "super_admin"


# Raw role string (after case/separator folding) -> canonical role.
RAW_ROLE_MAP: dict[str, Role] = {
    "organization_admin": Role.ORGANIZATION_ADMIN,
    "organization": Role.ORGANIZATION_ADMIN,
    "org_admin": Role.ORGANIZATION_ADMIN,
    "regional_admin": Role.REGIONAL_ADMIN,
    "regional": Role.REGIONAL_ADMIN,
    "region_admin": Role.REGIONAL_ADMIN,
    "finance_officer": Role.FINANCE_OFFICER,
    "finance": Role.FINANCE_OFFICER,
    "super_admin": Role.SUPER_ADMIN,
    "superadmin": Role.SUPER_ADMIN,
}


def normalize_role(raw_role: str | Role) -> Role:
    """
    Map a raw role string to its canonical ``Role``.

    Folding: surrounding whitespace stripped, lower-cased, ``-`` and spaces
    become ``_``.

    Raises:
        UnknownRoleError: If the folded string has no mapping.
    """
    if isinstance(raw_role, Role):
        return raw_role
    if not isinstance(raw_role, str):
        raise UnknownRoleError(repr(raw_role))
    folded = raw_role.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return RAW_ROLE_MAP[folded]
    except KeyError:
        raise UnknownRoleError(raw_role) from None


@dataclass(frozen=True)
class Actor:
    """A caller-supplied identity with its resolved role.

    The core does not authenticate; it only authorizes against ``role``.
    """

    actor_id: UUID
    role: Role

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", normalize_role(self.role))


def resolve_actor(directory, user_id: UUID) -> Actor:
    """Look up ``user_id`` in a RoleDirectory and build a resolved Actor."""
    return Actor(actor_id=user_id, role=normalize_role(directory.get_role(user_id)))
