"""Access control — role membership for admin and authorizer.

Roles are an explicit permission set keyed by identity. A permission
check is a dict lookup plus set membership; there is no role hierarchy.

Exactly one identity holds AUTHORIZER at any time. Rotation revokes the
old holder and grants the new one in a single step.
"""

from __future__ import annotations

import enum
from typing import Dict, FrozenSet, Optional, Set, Tuple

from arcpool.crypto.identifiers import normalize_identity, require_identity
from arcpool.errors import Unauthorized


class Role(str, enum.Enum):
    ADMIN = "admin"
    AUTHORIZER = "authorizer"


class AccessControl:
    """Role registry for one ledger instance.

    Usage:
        access = AccessControl(admin="0xAdmin...", authorizer="0xSigner...")
        access.require_role(caller, Role.ADMIN)
        old, new = access.rotate_authorizer("0xNewSigner...", caller=admin)
    """

    def __init__(self, admin: str, authorizer: str) -> None:
        self._roles: Dict[str, Set[Role]] = {}
        self._grant(require_identity(admin, "admin"), Role.ADMIN)
        self._authorizer = require_identity(authorizer, "authorizer")
        self._grant(self._authorizer, Role.AUTHORIZER)

    @property
    def authorizer(self) -> str:
        return self._authorizer

    def has_role(self, identity: Optional[str], role: Role) -> bool:
        if identity is None:
            return False
        return role in self._roles.get(identity.lower(), set())

    def require_role(self, identity: Optional[str], role: Role) -> None:
        if not self.has_role(identity, role):
            raise Unauthorized(
                f"{identity} lacks the {role.value} role", field="caller"
            )

    def holders(self, role: Role) -> list[str]:
        return sorted(
            normalize_identity(i) for i, roles in self._roles.items() if role in roles
        )

    def rotate_authorizer(self, new_identity: Optional[str], caller: str) -> Tuple[str, str]:
        """Hand the authorizer role to ``new_identity``.

        Returns (old_authorizer, new_authorizer).
        """
        self.require_role(caller, Role.ADMIN)
        new_authorizer = require_identity(new_identity, "new_authorizer")
        old_authorizer = self._authorizer
        self._revoke(old_authorizer, Role.AUTHORIZER)
        self._grant(new_authorizer, Role.AUTHORIZER)
        self._authorizer = new_authorizer
        return old_authorizer, new_authorizer

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def snapshot(self) -> Tuple[str, Dict[str, FrozenSet[Role]]]:
        return self._authorizer, {k: frozenset(v) for k, v in self._roles.items()}

    def restore(self, snapshot: Tuple[str, Dict[str, FrozenSet[Role]]]) -> None:
        authorizer, roles = snapshot
        self._authorizer = authorizer
        self._roles = {k: set(v) for k, v in roles.items()}

    def _grant(self, identity: str, role: Role) -> None:
        self._roles.setdefault(identity.lower(), set()).add(role)

    def _revoke(self, identity: str, role: Role) -> None:
        key = identity.lower()
        roles = self._roles.get(key, set())
        roles.discard(role)
        if not roles:
            self._roles.pop(key, None)
