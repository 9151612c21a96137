"""
Shared test fixtures: in-memory stand-ins for the KMS and Secrets Manager
clients and for the role manager, plus a declared-state factory.

The KMS and Secrets Manager fakes sit under the real adapters, so adapter
code is exercised by every reconciler test.
"""

import threading
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from credential_controller.config import Config
from credential_controller.declared import DeclaredState
from credential_controller.errors import RoleApplyFailed
from credential_controller.kms import KmsEncryptionAdapter
from credential_controller.models import (
    ClusterTarget,
    DatabaseSpec,
    EncryptedBlob,
    Identity,
    IdentityKind,
    PasswordPolicy,
)
from credential_controller.registry import IdentityRegistry
from credential_controller.secret_store import SecretsManagerStore


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


class FakeKmsClient:
    """Reversible stand-in for KMS; every encrypt yields a fresh ciphertext like the real service"""

    def __init__(self):
        self.counter = 0
        self.lock = threading.Lock()
        self.encrypt_calls = 0
        self.decrypt_calls = 0
        self.fail_with = None

    def encrypt(self, KeyId, Plaintext, **kwargs):
        if self.fail_with:
            raise client_error(self.fail_with, 'Encrypt')
        with self.lock:
            self.counter += 1
            self.encrypt_calls += 1
            nonce = self.counter
        return {'CiphertextBlob': f"kms:{KeyId}:{nonce}:".encode() + Plaintext[::-1], 'KeyId': KeyId}

    def decrypt(self, CiphertextBlob, KeyId=None, **kwargs):
        with self.lock:
            self.decrypt_calls += 1
        if self.fail_with:
            raise client_error(self.fail_with, 'Decrypt')
        if not CiphertextBlob.startswith(b"kms:"):
            raise client_error('InvalidCiphertextException', 'Decrypt')
        _, key, _, reversed_plaintext = CiphertextBlob.split(b":", 3)
        if KeyId and key.decode() != KeyId:
            raise client_error('IncorrectKeyException', 'Decrypt')
        return {'Plaintext': reversed_plaintext[::-1], 'KeyId': key.decode()}


class FakeSecretsManagerClient:
    """Stand-in for the Secrets Manager API calls the store uses"""

    def __init__(self):
        self.secrets = {}
        self.lock = threading.Lock()
        self.writes = 0
        self.fail_reads = set()
        self.fail_writes = set()

    def get_secret_value(self, SecretId):
        if SecretId in self.fail_reads:
            raise client_error('InternalServiceError', 'GetSecretValue')
        with self.lock:
            secret = self.secrets.get(SecretId)
            if secret is None:
                raise client_error('ResourceNotFoundException', 'GetSecretValue')
            return {'ARN': secret['ARN'], 'Name': SecretId, 'SecretString': secret['versions'][-1]}

    def create_secret(self, Name, SecretString, **kwargs):
        if Name in self.fail_writes:
            raise client_error('InternalServiceError', 'CreateSecret')
        with self.lock:
            if Name in self.secrets:
                raise client_error('ResourceExistsException', 'CreateSecret')
            arn = f"arn:aws:secretsmanager:us-east-1:123456789012:secret:{Name}"
            self.secrets[Name] = {'ARN': arn, 'versions': [SecretString], 'Tags': kwargs.get('Tags')}
            self.writes += 1
            return {'ARN': arn, 'Name': Name}

    def put_secret_value(self, SecretId, SecretString):
        if SecretId in self.fail_writes:
            raise client_error('InternalServiceError', 'PutSecretValue')
        with self.lock:
            secret = self.secrets.get(SecretId)
            if secret is None:
                raise client_error('ResourceNotFoundException', 'PutSecretValue')
            secret['versions'].append(SecretString)
            self.writes += 1
            return {'ARN': secret['ARN'], 'Name': SecretId}


class FakeRoleManager:
    """Records role-management calls; failures are injected per role name"""

    def __init__(self):
        self.lock = threading.Lock()
        self.events = []
        self.passwords = {}
        self.memberships = {}
        self.login = None
        self.failures = {}
        self.on_apply = None

    def _record(self, *event):
        with self.lock:
            self.events.append(event)

    def login_as(self, username, password):
        self.login = (username, password)
        self._record('login', username)

    def ensure_roles(self, role_names):
        names = list(role_names)
        self._record('ensure', tuple(names))
        return set()

    def create_or_alter_role(self, role_name, password, member_of=(), revoke=(), admin=False):
        self._record('apply-start', role_name)
        if role_name in self.failures:
            raise self.failures[role_name]
        if not admin and (self.login is None or self.passwords.get(self.login[0]) not in (None, self.login[1])):
            raise RoleApplyFailed("password authentication failed")
        with self.lock:
            self.passwords[role_name] = password
            current = self.memberships.setdefault(role_name, set())
            current.difference_update(revoke)
            current.update(member_of)
        self._record('apply-end', role_name)
        if self.on_apply:
            self.on_apply(role_name)

    def update_memberships(self, role_name, old_roles, new_roles):
        if role_name in self.failures:
            raise self.failures[role_name]
        with self.lock:
            self.memberships[role_name] = set(new_roles)
        self._record('regrant', role_name)

    def create_database(self, name, extensions=(), privileges=()):
        if name in self.failures:
            raise self.failures[name]
        self._record('database', name)

    def close(self):
        self.login = None

    def applied(self):
        return [event[1] for event in self.events if event[0] == 'apply-end']


@pytest.fixture
def kms_client():
    return FakeKmsClient()


@pytest.fixture
def kms(kms_client):
    return KmsEncryptionAdapter("alias/test", client=kms_client)


@pytest.fixture
def sm_client():
    return FakeSecretsManagerClient()


@pytest.fixture
def store(sm_client):
    return SecretsManagerStore(client=sm_client, tags={'cluster': 'my-cluster'})


@pytest.fixture
def role_manager():
    return FakeRoleManager()


@pytest.fixture(autouse=True)
def no_propagation_wait():
    with patch.object(Config, 'ADMIN_PROPAGATION_WAIT', 0):
        yield


@pytest.fixture
def make_declared(kms):
    """Build a DeclaredState; roles map name -> {'password': plaintext, 'member_of': [...]}"""

    def _make(roles=None, admin_password=None, databases=(), cluster="my-cluster", policy=None):
        admin = Identity(
            name="admin",
            kind=IdentityKind.ADMIN,
            desired_secret=EncryptedBlob(kms.encrypt(admin_password)) if admin_password else None,
        )
        identities = []
        for name, spec in (roles or {}).items():
            spec = spec or {}
            password = spec.get('password')
            identities.append(Identity(
                name=name,
                kind=IdentityKind.ROLE,
                member_of=tuple(spec.get('member_of', ())),
                desired_secret=EncryptedBlob(kms.encrypt(password)) if password else None,
            ))
        target = ClusterTarget(identifier=cluster, endpoint=f"{cluster}.cluster-abc.rds.amazonaws.com", admin=admin)
        return DeclaredState(
            target=target,
            registry=IdentityRegistry(admin, identities),
            databases=[DatabaseSpec(name=name) for name in databases],
            policy=policy or PasswordPolicy(),
        )

    return _make
