"""
Data models shared by the registry, the adapters and the reconciler
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

SECRET_PATH_PREFIX = "rds"
NO_DATABASE = "-"
DATABASE_PRIVILEGES = {'CONNECT', 'CREATE', 'TEMPORARY', 'TEMP', 'ALL', 'ALL PRIVILEGES'}


def secret_path(cluster: str, identity: str, database: str = NO_DATABASE) -> str:
    """Deterministic secret store location for an identity's credential"""
    return f"{SECRET_PATH_PREFIX}/{cluster}/{identity}/{database}"


class IdentityKind(str, Enum):
    ADMIN = "admin"
    ROLE = "role"


@dataclass(frozen=True)
class EncryptedBlob:
    """KMS ciphertext as declared by the operator"""
    ciphertext: bytes

    def __repr__(self):
        return f"EncryptedBlob(<{len(self.ciphertext)} bytes>)"


@dataclass(frozen=True)
class Identity:
    """A database principal whose credential lifecycle is managed"""
    name: str
    kind: IdentityKind = IdentityKind.ROLE
    member_of: Tuple[str, ...] = ()
    desired_secret: Optional[EncryptedBlob] = None
    database: str = NO_DATABASE

    @property
    def is_admin(self) -> bool:
        return self.kind == IdentityKind.ADMIN


@dataclass(frozen=True)
class ClusterTarget:
    """Where role and password changes are applied; fixed for a run"""
    identifier: str
    endpoint: str
    admin: Identity
    port: int = 5432
    database: str = "postgres"

    def path_for(self, identity: Identity) -> str:
        return secret_path(self.identifier, identity.name, identity.database)


@dataclass(frozen=True)
class PasswordPolicy:
    length: int = 32
    require: Tuple[str, ...] = ("upper", "lower", "digit", "symbol")
    exclude: str = '/@"\'\\ '


@dataclass(frozen=True)
class DatabaseGrant:
    role: str
    grants: Tuple[str, ...]


@dataclass(frozen=True)
class DatabaseSpec:
    name: str
    extensions: Tuple[str, ...] = ()
    privileges: Tuple[DatabaseGrant, ...] = ()


@dataclass
class SecretRecord:
    """A stored credential; the plaintext itself is never part of it"""
    path: str
    ciphertext: bytes
    fingerprint: str
    version: int
    last_rotated: datetime
    member_of: Tuple[str, ...] = ()
    arn: Optional[str] = None


class ActionKind(str, Enum):
    GENERATE = "Generate"
    DECRYPT = "Decrypt"
    REGRANT = "Regrant"
    SKIP = "Skip"


@dataclass
class PlannedAction:
    kind: ActionKind
    identity: Identity
    blob: Optional[EncryptedBlob] = None
    stored: Optional[SecretRecord] = None

    def describe(self) -> str:
        return f"{self.kind.value}({self.identity.name})"


class Outcome(str, Enum):
    CREATED = "Created"
    ROTATED = "Rotated"
    UPDATED = "Updated"
    UNCHANGED = "Unchanged"
    FAILED = "Failed"
    PLANNED = "Planned"


class DatabaseOutcome(str, Enum):
    APPLIED = "Applied"
    FAILED = "Failed"
    PLANNED = "Planned"


@dataclass
class ReconcileResult:
    identity: Identity
    outcome: Outcome
    reason: Optional[str] = None
    version: Optional[int] = None
    action: Optional[ActionKind] = None

    def describe(self) -> str:
        if self.outcome == Outcome.FAILED:
            return f"{self.identity.name}: Failed({self.reason})"
        return f"{self.identity.name}: {self.outcome.value}"


@dataclass
class DatabaseResult:
    name: str
    outcome: DatabaseOutcome
    reason: Optional[str] = None


@dataclass
class ReconcileReport:
    """Per-identity and per-database outcomes of one reconciliation run"""
    results: List[ReconcileResult] = field(default_factory=list)
    databases: List[DatabaseResult] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def failed(self) -> bool:
        return any(r.outcome == Outcome.FAILED for r in self.results) or any(
            d.outcome == DatabaseOutcome.FAILED for d in self.databases
        )

    def result_for(self, name: str) -> Optional[ReconcileResult]:
        for result in self.results:
            if result.identity.name == name:
                return result
        return None

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def to_dict(self) -> Dict:
        return {
            'outcomes': {r.identity.name: r.describe().split(": ", 1)[1] for r in self.results},
            'databases': {d.name: d.outcome.value for d in self.databases},
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds()
        }
