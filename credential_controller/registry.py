"""
Declared identities and the declared-vs-stored diff.

The registry decides, per identity, what the reconciler has to do:

- no declared password and nothing stored: generate one
- no declared password and a stored credential: leave it alone (never rotate
  silently), unless the declared memberships changed
- a declared encrypted password: decrypt it; the reconciler compares its keyed
  fingerprint to the stored one to tell a rotation from a no-op
"""

import hashlib
import hmac
import re
from typing import Dict, Iterable, List, Optional, Sequence

from credential_controller.config import Config
from credential_controller.errors import PolicyViolation
from credential_controller.models import (
    ActionKind,
    ClusterTarget,
    Identity,
    IdentityKind,
    PlannedAction,
    SecretRecord,
)

# PostgreSQL truncates identifiers at 63 bytes
SQL_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_$]{0,62}$')
# Database component of a secret path; "-" means not bound to one database
PATH_DATABASE = re.compile(r'^(-|[A-Za-z_][A-Za-z0-9_$]{0,62})$')


def fingerprint(key: bytes, plaintext: str) -> str:
    """Keyed fingerprint of a credential; safe to store, unlike the plaintext"""
    return hmac.new(key, plaintext.encode('utf-8'), hashlib.sha256).hexdigest()


def is_sql_identifier(name: str) -> bool:
    return isinstance(name, str) and bool(SQL_IDENTIFIER.match(name))


class IdentityRegistry:
    """The admin identity and the named roles declared for one cluster"""

    def __init__(self, admin: Identity, roles: Sequence[Identity] = ()):
        self.admin = admin
        self.roles = list(roles)

    def ordered(self) -> List[Identity]:
        """Admin first, then roles in declared order"""
        return [self.admin] + self.roles

    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]

    def validate(self) -> None:
        """
        Pre-flight validation of the declared identities

        Raises:
            PolicyViolation: Invalid or duplicate names, admin memberships,
                memberships of undeclared roles, declared system roles
        """
        if self.admin.kind != IdentityKind.ADMIN:
            raise PolicyViolation(f"Identity {self.admin.name} is not an admin identity")
        if self.admin.member_of:
            raise PolicyViolation(f"Admin identity {self.admin.name} cannot have memberships")

        seen = set()
        for identity in self.ordered():
            if not is_sql_identifier(identity.name):
                raise PolicyViolation(f"'{identity.name}' is not a valid SQL identifier")
            if not PATH_DATABASE.match(identity.database or ""):
                raise PolicyViolation(
                    f"'{identity.database}' is not a valid database name for {identity.name}"
                )
            if identity.name in seen:
                raise PolicyViolation(f"Identity {identity.name} is declared more than once")
            seen.add(identity.name)

        declared_roles = set(self.role_names())
        for role in self.roles:
            if role.kind != IdentityKind.ROLE:
                raise PolicyViolation(f"Only one admin identity may be declared, found {role.name}")
            if role.name in Config.SYSTEM_ROLES:
                raise PolicyViolation(f"Role {role.name} is a system role and cannot be managed")
            for parent in role.member_of:
                if parent == role.name:
                    raise PolicyViolation(f"Role {role.name} cannot be a member of itself")
                if parent not in declared_roles:
                    raise PolicyViolation(
                        f"Role {role.name} is a member of undeclared role {parent}"
                    )

    def diff(self, stored: Iterable[SecretRecord], target: ClusterTarget) -> List[PlannedAction]:
        """
        Plan one action per declared identity

        Args:
            stored: Records currently held by the secret store
            target: Cluster the identities belong to, used to compute paths

        Returns:
            Actions ordered admin first, then roles in declared order
        """
        by_path: Dict[str, SecretRecord] = {record.path: record for record in stored}
        actions = []
        for identity in self.ordered():
            record = by_path.get(target.path_for(identity))
            actions.append(plan_action(identity, record))
        return actions


def plan_action(identity: Identity, record: Optional[SecretRecord]) -> PlannedAction:
    if identity.desired_secret is not None:
        return PlannedAction(ActionKind.DECRYPT, identity, blob=identity.desired_secret, stored=record)
    if record is None:
        return PlannedAction(ActionKind.GENERATE, identity)
    if set(record.member_of) != set(identity.member_of):
        return PlannedAction(ActionKind.REGRANT, identity, stored=record)
    return PlannedAction(ActionKind.SKIP, identity, stored=record)
