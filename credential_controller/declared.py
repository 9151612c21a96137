"""
Declared configuration: parsing and sources.

The declared state is a YAML document, read from a local file or from a
Kubernetes ConfigMap:

    cluster:
      identifier: my-cluster
      endpoint: my-cluster.cluster-abc.us-east-1.rds.amazonaws.com
      port: 5432
      database: postgres
    admin:
      name: admin
      password: <base64 KMS ciphertext>      # optional, generated if absent
    roles:
      casper:
        member_of: [analytics]
      analytics:
        password: <base64 KMS ciphertext>
    databases:
      app:
        extensions: [pg_stat_statements]
        privileges:
          - role: casper
            grants: [CONNECT]
    password_policy:
      length: 32
      require: [upper, lower, digit, symbol]
"""

import base64
import binascii
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from credential_controller.config import Config
from credential_controller.errors import PolicyViolation
from credential_controller.generator import validate_policy
from credential_controller.models import (
    DATABASE_PRIVILEGES,
    NO_DATABASE,
    ClusterTarget,
    DatabaseGrant,
    DatabaseSpec,
    EncryptedBlob,
    Identity,
    IdentityKind,
    PasswordPolicy,
)
from credential_controller.registry import IdentityRegistry, is_sql_identifier

logger = logging.getLogger("credential-controller")


@dataclass
class DeclaredState:
    """Everything the operator declared for one cluster"""
    target: ClusterTarget
    registry: IdentityRegistry
    databases: List[DatabaseSpec] = field(default_factory=list)
    policy: PasswordPolicy = field(default_factory=PasswordPolicy)

    def validate(self):
        """
        Pre-flight validation; raises PolicyViolation before any side effect
        """
        self.registry.validate()
        validate_policy(self.policy)

        declared_roles = set(self.registry.role_names()) | {self.target.admin.name}
        seen = set()
        for database in self.databases:
            if not is_sql_identifier(database.name):
                raise PolicyViolation(f"'{database.name}' is not a valid database name")
            if database.name in seen:
                raise PolicyViolation(f"Database {database.name} is declared more than once")
            seen.add(database.name)
            for extension in database.extensions:
                if not is_sql_identifier(extension):
                    raise PolicyViolation(f"'{extension}' is not a valid extension name")
            for grant in database.privileges:
                if grant.role not in declared_roles:
                    raise PolicyViolation(
                        f"Database {database.name} grants privileges to undeclared role {grant.role}"
                    )
                invalid = {p.upper() for p in grant.grants} - DATABASE_PRIVILEGES
                if invalid:
                    raise PolicyViolation(
                        f"Unsupported privileges {sorted(invalid)} on database {database.name}"
                    )


def _decode_blob(owner: str, value) -> Optional[EncryptedBlob]:
    if value in (None, ""):
        return None
    try:
        return EncryptedBlob(base64.b64decode(str(value), validate=True))
    except (binascii.Error, ValueError) as e:
        raise PolicyViolation(f"Password for {owner} is not base64 ciphertext: {e}") from e


def _as_list(owner: str, key: str, value) -> List:
    if value is None:
        return []
    if not isinstance(value, list):
        raise PolicyViolation(f"'{key}' for {owner} must be a list")
    return value


def parse_declared_state(yaml_content: str) -> DeclaredState:
    """
    Parse the declared YAML document

    Args:
        yaml_content: YAML string

    Returns:
        DeclaredState, not yet validated

    Raises:
        PolicyViolation: Malformed YAML or missing required fields
    """
    try:
        parsed = yaml.safe_load(yaml_content) or {}
    except yaml.YAMLError as e:
        raise PolicyViolation(f"Declared configuration is not valid YAML: {e}") from e
    if not isinstance(parsed, dict):
        raise PolicyViolation("Declared configuration must be a mapping")

    try:
        cluster = parsed["cluster"]
        admin_data = parsed.get("admin") or {}
        admin = Identity(
            name=admin_data.get("name", "postgres"),
            kind=IdentityKind.ADMIN,
            desired_secret=_decode_blob("admin", admin_data.get("password")),
            database=str(admin_data.get("database", NO_DATABASE)),
        )
        target = ClusterTarget(
            identifier=cluster["identifier"],
            endpoint=cluster["endpoint"],
            admin=admin,
            port=int(cluster.get("port", 5432)),
            database=cluster.get("database", "postgres"),
        )

        roles = []
        for name, role_data in (parsed.get("roles") or {}).items():
            role_data = role_data or {}
            member_of = _as_list(name, "member_of", role_data.get("member_of"))
            roles.append(Identity(
                name=str(name),
                kind=IdentityKind.ROLE,
                member_of=tuple(str(parent) for parent in member_of),
                desired_secret=_decode_blob(name, role_data.get("password")),
                database=str(role_data.get("database", NO_DATABASE)),
            ))

        databases = []
        for name, db_data in (parsed.get("databases") or {}).items():
            db_data = db_data or {}
            privileges = tuple(
                DatabaseGrant(
                    role=str(entry["role"]),
                    grants=tuple(str(p) for p in _as_list(name, "grants", entry.get("grants"))),
                )
                for entry in _as_list(name, "privileges", db_data.get("privileges"))
            )
            databases.append(DatabaseSpec(
                name=str(name),
                extensions=tuple(str(e) for e in _as_list(name, "extensions", db_data.get("extensions"))),
                privileges=privileges,
            ))

        policy_data = parsed.get("password_policy") or {}
        defaults = PasswordPolicy()
        # An empty key keeps the default; exclude: "" turns exclusions off
        length = policy_data.get("length")
        require = policy_data.get("require")
        exclude = policy_data.get("exclude")
        policy = PasswordPolicy(
            length=defaults.length if length is None else int(length),
            require=defaults.require if require is None else tuple(
                str(c) for c in _as_list("password_policy", "require", require)
            ),
            exclude=defaults.exclude if exclude is None else str(exclude),
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise PolicyViolation(f"Declared configuration is missing or has a malformed field: {e}") from e
    except ValueError as e:
        raise PolicyViolation(f"Declared configuration has an invalid value: {e}") from e

    return DeclaredState(
        target=target,
        registry=IdentityRegistry(admin, roles),
        databases=databases,
        policy=policy,
    )


def load_from_file(path: str) -> DeclaredState:
    try:
        with open(path, 'r') as f:
            return parse_declared_state(f.read())
    except IOError as e:
        raise PolicyViolation(f"Cannot read declared configuration {path}: {e}") from e


# ============================================================================
# KUBERNETES CLIENT
# ============================================================================

class KubernetesClient:
    """Reads the declared configuration from a ConfigMap"""

    def __init__(self):
        try:
            config.load_incluster_config()
        except config.ConfigException:
            logger.warning("Failed to load in-cluster config, trying local kubeconfig")
            config.load_kube_config()

        self.v1 = client.CoreV1Api()

    def fetch_configmap(self, name: str, namespace: str, key: str, retry_count: int = 0) -> Optional[str]:
        """
        Fetch ConfigMap data with exponential backoff retry logic

        Args:
            name: ConfigMap name
            namespace: Kubernetes namespace
            key: Data key holding the YAML document
            retry_count: Current retry attempt

        Returns:
            ConfigMap data as string or None if not found
        """
        try:
            cm = self.v1.read_namespaced_config_map(name, namespace)
            return (cm.data or {}).get(key, "")
        except ApiException as e:
            if e.status == 404:
                logger.warning(f"ConfigMap {name} not found in namespace {namespace}")
                return None
            elif retry_count < Config.MAX_RETRIES:
                sleep_time = Config.RETRY_BACKOFF_BASE ** retry_count
                logger.warning(f"Error fetching ConfigMap (attempt {retry_count + 1}/{Config.MAX_RETRIES}), "
                               f"retrying in {sleep_time}s: {e}")
                time.sleep(sleep_time)
                return self.fetch_configmap(name, namespace, key, retry_count + 1)
            else:
                logger.error(f"Failed to fetch ConfigMap after {Config.MAX_RETRIES} retries: {e}")
                raise


def load_declared_state(k8s_client: Optional[KubernetesClient] = None) -> Optional[DeclaredState]:
    """
    Load the declared state from CONFIG_FILE, or from the ConfigMap

    Returns:
        DeclaredState, or None when the ConfigMap does not exist
    """
    if Config.CONFIG_FILE:
        logger.info(f"Loading declared configuration from {Config.CONFIG_FILE}")
        return load_from_file(Config.CONFIG_FILE)

    k8s_client = k8s_client or KubernetesClient()
    yaml_content = k8s_client.fetch_configmap(Config.CONFIGMAP_NAME, Config.NAMESPACE, Config.CONFIGMAP_KEY)
    if yaml_content is None:
        return None
    if not yaml_content:
        raise PolicyViolation(
            f"ConfigMap {Config.CONFIGMAP_NAME} has no '{Config.CONFIGMAP_KEY}' entry"
        )
    return parse_declared_state(yaml_content)
