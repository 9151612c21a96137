"""
Credential reconciliation.

Each declared identity moves through

    PENDING -> RESOLVING -> APPLYING -> COMMITTED | FAILED

RESOLVING produces the plaintext (generated, or decrypted from the declared
ciphertext). APPLYING makes it live through the role manager and only then
encrypts and stores it, so the secret store never holds a credential that
was not accepted by the database. A store failure after a successful apply is
reported as PersistAfterApply and left for the operator.

Declared role passwords are decrypted before missing roles are created, so a
role whose password cannot be decrypted leaves nothing behind in the database.

The admin identity is reconciled first; role identities run concurrently
afterwards, as the admin, and fail independently of each other.
"""

import hmac
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from credential_controller import generator
from credential_controller.config import GREEN, RED, RESET, YELLOW
from credential_controller.declared import DeclaredState
from credential_controller.errors import (
    Cancelled,
    CredentialError,
    PersistAfterApply,
    PolicyViolation,
    RoleApplyFailed,
    SecretNotFound,
)
from credential_controller.models import (
    ActionKind,
    ClusterTarget,
    DatabaseOutcome,
    DatabaseResult,
    DatabaseSpec,
    Identity,
    Outcome,
    PasswordPolicy,
    PlannedAction,
    ReconcileReport,
    ReconcileResult,
    SecretRecord,
)
from credential_controller.registry import fingerprint

logger = logging.getLogger("credential-controller")


class IdentityState(str, Enum):
    PENDING = "Pending"
    RESOLVING = "Resolving"
    APPLYING = "Applying"
    COMMITTED = "Committed"
    FAILED = "Failed"


@dataclass
class IdentityTask:
    """State of one identity within a run"""
    action: PlannedAction
    state: IdentityState = IdentityState.PENDING
    history: List[IdentityState] = field(default_factory=lambda: [IdentityState.PENDING])
    outcome: Optional[Outcome] = None
    reason: Optional[str] = None
    record: Optional[SecretRecord] = None
    # Plaintext known to be live in the database, kept in memory for the admin login
    live_password: Optional[str] = None

    @property
    def identity(self) -> Identity:
        return self.action.identity

    def transition(self, state: IdentityState):
        logger.debug(f"{self.identity.name}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def commit(self, outcome: Outcome, record: Optional[SecretRecord] = None):
        self.transition(IdentityState.COMMITTED)
        self.outcome = outcome
        self.record = record or self.record

    def fail(self, reason: str):
        self.transition(IdentityState.FAILED)
        self.outcome = Outcome.FAILED
        self.reason = reason

    def result(self) -> ReconcileResult:
        return ReconcileResult(
            identity=self.identity,
            outcome=self.outcome,
            reason=self.reason,
            version=self.record.version if self.record else None,
            action=self.action.kind,
        )


class Reconciler:
    """
    Converges stored and live credentials with the declared identities

    Args:
        kms: Encryption adapter (encrypt/decrypt)
        store: Secret store adapter (get/put)
        role_manager: Role-management collaborator
        fingerprint_key: Key for plaintext fingerprints
        max_workers: Concurrent role identities
        dry_run: Plan and report without side effects
        cancel_event: Set to stop identities that have not started applying
    """

    def __init__(self, kms, store, role_manager, fingerprint_key: bytes,
                 max_workers: int = 4, dry_run: bool = False,
                 cancel_event: Optional[threading.Event] = None):
        self.kms = kms
        self.store = store
        self.role_manager = role_manager
        self.fingerprint_key = fingerprint_key
        self.max_workers = max(1, max_workers)
        self.dry_run = dry_run
        self.cancel_event = cancel_event or threading.Event()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def preflight(self, declared: DeclaredState):
        """Validate everything before the first external call"""
        if not self.fingerprint_key:
            raise PolicyViolation("No fingerprint key configured")
        declared.validate()

    def load_stored(self, declared: DeclaredState) -> Tuple[List[SecretRecord], Dict[str, CredentialError]]:
        """
        Read the stored record of every declared identity

        Returns:
            Records found, and read errors keyed by identity name
        """
        records = []
        errors = {}
        for identity in declared.registry.ordered():
            path = declared.target.path_for(identity)
            try:
                records.append(self.store.get(path))
            except SecretNotFound:
                logger.debug(f"No stored credential at {path}")
            except CredentialError as e:
                logger.error(f"Failed to read stored credential {path}: {e.reason}")
                errors[identity.name] = e
        return records, errors

    def plan(self, declared: DeclaredState) -> List[PlannedAction]:
        self.preflight(declared)
        records, _ = self.load_stored(declared)
        return declared.registry.diff(records, declared.target)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, declared: DeclaredState) -> ReconcileReport:
        """
        Run one reconciliation of the declared state

        Raises:
            PolicyViolation: Pre-flight validation failed; nothing was touched

        Returns:
            Per-identity and per-database outcomes
        """
        self.preflight(declared)
        report = ReconcileReport(start_time=datetime.now())
        target = declared.target

        records, load_errors = self.load_stored(declared)
        actions = declared.registry.diff(records, target)
        logger.info(f"Planned actions: {', '.join(a.describe() for a in actions)}")

        if self.dry_run:
            return self._dry_run(declared, actions, report)

        admin_action, role_actions = actions[0], actions[1:]

        admin_task = self._run(admin_action, target, declared.policy, load_errors)
        report.results.append(admin_task.result())

        resolved, failures = self._resolve_declared(role_actions, load_errors)
        blocked = self._prepare_roles(admin_task, target, role_actions, declared, failures)

        role_tasks = self._run_roles(role_actions, target, declared.policy, failures, blocked, resolved)
        report.results.extend(task.result() for task in role_tasks)

        for database in declared.databases:
            report.databases.append(self._apply_database(database, blocked))

        report.end_time = datetime.now()
        return report

    def _dry_run(self, declared: DeclaredState, actions: List[PlannedAction],
                 report: ReconcileReport) -> ReconcileReport:
        for action in actions:
            if action.kind == ActionKind.SKIP:
                outcome = Outcome.UNCHANGED
            else:
                outcome = Outcome.PLANNED
                logger.info(f"[DRY-RUN] Would {action.kind.value.lower()} credential for {action.identity.name}")
            report.results.append(ReconcileResult(action.identity, outcome, action=action.kind))
        for database in declared.databases:
            logger.info(f"[DRY-RUN] Would ensure database {database.name}")
            report.databases.append(DatabaseResult(database.name, DatabaseOutcome.PLANNED))
        report.end_time = datetime.now()
        return report

    def _resolve_declared(self, actions: List[PlannedAction], load_errors: Dict[str, CredentialError]
                          ) -> Tuple[Dict[str, str], Dict[str, CredentialError]]:
        """
        Decrypt the declared passwords of role identities up front

        Returns:
            Plaintexts by identity name, and every known failure by identity
            name (load errors included)
        """
        resolved = {}
        failures = dict(load_errors)
        for action in actions:
            name = action.identity.name
            if action.kind != ActionKind.DECRYPT or name in failures:
                continue
            try:
                resolved[name] = self.kms.decrypt(action.blob.ciphertext)
            except CredentialError as e:
                failures[name] = e
        return resolved, failures

    def _prepare_roles(self, admin_task: IdentityTask, target: ClusterTarget,
                       role_actions: List[PlannedAction], declared: DeclaredState,
                       failures: Dict[str, CredentialError]) -> Optional[CredentialError]:
        """
        Log in as the admin and create missing roles for identities not
        already known to fail

        Returns:
            The error blocking every role change, or None
        """
        needs_database = declared.databases or any(a.kind != ActionKind.SKIP for a in role_actions)
        if not needs_database:
            return None

        password = admin_task.live_password
        if password is None and admin_task.action.stored is not None:
            try:
                password = self.kms.decrypt(admin_task.action.stored.ciphertext)
            except CredentialError as e:
                logger.error(f"{RED}Cannot decrypt stored admin credential: {e.reason}{RESET}")
                return RoleApplyFailed(f"Admin credential unavailable: {e.reason}")
        if password is None:
            self.role_manager.close()
            logger.error(f"{RED}No admin credential available; role changes are blocked{RESET}")
            return RoleApplyFailed("Admin credential unavailable")

        self.role_manager.login_as(target.admin.name, password)
        try:
            self.role_manager.ensure_roles(
                a.identity.name for a in role_actions if a.identity.name not in failures
            )
        except CredentialError as e:
            logger.error(f"{RED}Failed to create missing roles: {e}{RESET}")
            return e
        return None

    def _run_roles(self, actions: List[PlannedAction], target: ClusterTarget, policy: PasswordPolicy,
                   failures: Dict[str, CredentialError], blocked: Optional[CredentialError],
                   resolved: Dict[str, str]) -> List[IdentityTask]:
        if not actions:
            return []
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="identity") as executor:
            futures = [
                executor.submit(self._run, action, target, policy, failures, blocked, resolved)
                for action in actions
            ]
            # Declared order is kept in the report regardless of completion order
            return [future.result() for future in futures]

    def _run(self, action: PlannedAction, target: ClusterTarget, policy: PasswordPolicy,
             failures: Dict[str, CredentialError],
             blocked: Optional[CredentialError] = None,
             resolved: Optional[Dict[str, str]] = None) -> IdentityTask:
        task = IdentityTask(action)
        identity = action.identity
        try:
            if identity.name in failures:
                raise failures[identity.name]
            self._reconcile_identity(task, target, policy, blocked, (resolved or {}).get(identity.name))
        except CredentialError as e:
            if isinstance(e, PersistAfterApply):
                logger.error(f"{RED}{identity.name}: live credential and stored secret are now "
                             f"inconsistent, re-run required: {e}{RESET}")
            else:
                logger.error(f"{identity.name}: {e.reason}: {e}")
            task.fail(e.reason)
        except Exception as e:
            logger.error(f"Unexpected error reconciling {identity.name}: {e}", exc_info=True)
            task.fail(f"Unexpected({e.__class__.__name__})")

        if task.outcome == Outcome.FAILED:
            logger.info(f"{RED}{task.result().describe()}{RESET}")
        elif task.outcome == Outcome.UNCHANGED:
            logger.info(task.result().describe())
        else:
            logger.info(f"{GREEN}{task.result().describe()}{RESET}")
        return task

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise Cancelled("Run cancelled before the credential was applied")

    def _reconcile_identity(self, task: IdentityTask, target: ClusterTarget, policy: PasswordPolicy,
                            blocked: Optional[CredentialError], plaintext: Optional[str] = None):
        action = task.action
        identity = task.identity
        stored = action.stored

        self._check_cancelled()
        if action.kind == ActionKind.SKIP:
            task.commit(Outcome.UNCHANGED, stored)
            return

        task.transition(IdentityState.RESOLVING)
        if action.kind == ActionKind.REGRANT:
            self._regrant(task, target, blocked)
            return

        if action.kind == ActionKind.GENERATE:
            plaintext = generator.generate(policy)
        elif plaintext is None:
            plaintext = self.kms.decrypt(action.blob.ciphertext)
        digest = fingerprint(self.fingerprint_key, plaintext)

        unchanged = stored is not None and hmac.compare_digest(
            stored.fingerprint.encode('utf-8'), digest.encode('utf-8')
        )
        if unchanged:
            task.live_password = plaintext
            if set(stored.member_of) == set(identity.member_of):
                task.commit(Outcome.UNCHANGED, stored)
            else:
                self._regrant(task, target, blocked)
            return

        outcome = Outcome.ROTATED if stored is not None else Outcome.CREATED
        revoke = sorted(set(stored.member_of) - set(identity.member_of)) if stored else []

        self._check_cancelled()
        task.transition(IdentityState.APPLYING)
        if blocked is not None and not identity.is_admin:
            raise blocked
        self.role_manager.create_or_alter_role(
            identity.name, plaintext, list(identity.member_of), revoke=revoke, admin=identity.is_admin
        )
        task.live_password = plaintext

        try:
            ciphertext = self.kms.encrypt(plaintext)
            record = self.store.put(target.path_for(identity), ciphertext, digest, identity.member_of)
        except CredentialError as e:
            raise PersistAfterApply(f"Credential for {identity.name} is live but not stored: {e.reason}") from e
        task.commit(outcome, record)

    def _regrant(self, task: IdentityTask, target: ClusterTarget, blocked: Optional[CredentialError]):
        identity = task.identity
        stored = task.action.stored

        self._check_cancelled()
        task.transition(IdentityState.APPLYING)
        if blocked is not None:
            raise blocked
        self.role_manager.update_memberships(identity.name, stored.member_of, identity.member_of)
        try:
            record = self.store.put(
                target.path_for(identity), stored.ciphertext, stored.fingerprint, identity.member_of
            )
        except CredentialError as e:
            raise PersistAfterApply(f"Memberships of {identity.name} changed but were not stored: {e.reason}") from e
        task.commit(Outcome.UPDATED, record)

    def _apply_database(self, database: DatabaseSpec, blocked: Optional[CredentialError]) -> DatabaseResult:
        try:
            self._check_cancelled()
            if blocked is not None:
                raise blocked
            self.role_manager.create_database(database.name, database.extensions, database.privileges)
            logger.info(f"{GREEN}{database.name}: Applied{RESET}")
            return DatabaseResult(database.name, DatabaseOutcome.APPLIED)
        except CredentialError as e:
            logger.error(f"{YELLOW}Database {database.name} not applied: {e.reason}: {e}{RESET}")
            return DatabaseResult(database.name, DatabaseOutcome.FAILED, reason=e.reason)
