import base64
import os
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException

from credential_controller.config import Config
from credential_controller.declared import (
    KubernetesClient,
    load_declared_state,
    parse_declared_state,
)
from credential_controller.errors import PolicyViolation
from credential_controller.models import IdentityKind, PasswordPolicy

CIPHERTEXT = base64.b64encode(b"kms-ciphertext").decode()

DECLARED_YAML = f"""
cluster:
  identifier: my-cluster
  endpoint: my-cluster.cluster-abc.us-east-1.rds.amazonaws.com
  port: 5433
admin:
  name: admin
roles:
  casper:
    member_of: [analytics]
  analytics:
    password: {CIPHERTEXT}
databases:
  app:
    extensions: [pg_stat_statements]
    privileges:
      - role: casper
        grants: [CONNECT, TEMPORARY]
password_policy:
  length: 24
  require: [upper, lower, digit]
"""


def test_parse_declared_state():
    declared = parse_declared_state(DECLARED_YAML)

    assert declared.target.identifier == "my-cluster"
    assert declared.target.port == 5433
    assert declared.target.database == "postgres"
    assert declared.target.admin.kind == IdentityKind.ADMIN
    assert declared.target.admin.desired_secret is None

    casper, analytics = declared.registry.roles
    assert casper.name == "casper"
    assert casper.member_of == ("analytics",)
    assert casper.desired_secret is None
    assert analytics.desired_secret.ciphertext == b"kms-ciphertext"

    app = declared.databases[0]
    assert app.name == "app"
    assert app.extensions == ("pg_stat_statements",)
    assert app.privileges[0].role == "casper"
    assert app.privileges[0].grants == ("CONNECT", "TEMPORARY")

    assert declared.policy.length == 24
    assert declared.policy.require == ("upper", "lower", "digit")

    declared.validate()


def test_defaults():
    declared = parse_declared_state("cluster: {identifier: c, endpoint: c.example}")
    assert declared.target.admin.name == "postgres"
    assert declared.target.port == 5432
    assert declared.registry.roles == []
    assert declared.databases == []
    assert declared.policy.length == 32


def test_admin_password_is_never_logged_in_repr():
    declared = parse_declared_state(
        f"cluster: {{identifier: c, endpoint: e}}\nadmin: {{name: admin, password: {CIPHERTEXT}}}"
    )
    assert CIPHERTEXT not in repr(declared.target.admin)


@pytest.mark.parametrize("content", [
    "cluster: [unclosed",
    "- just\n- a list",
    "roles: {}",
    "cluster: {identifier: c}",
    "cluster: {identifier: c, endpoint: e, port: abc}",
    "cluster: {identifier: c, endpoint: e}\nroles: {casper: {member_of: analytics}}",
    "cluster: {identifier: c, endpoint: e}\nroles: {casper: {password: 'not base64!'}}",
    "cluster: {identifier: c, endpoint: e}\ndatabases: {app: {privileges: [grants]}}",
    "cluster: {identifier: c, endpoint: e}\npassword_policy: {require: upper}",
    "cluster: {identifier: c, endpoint: e}\ndatabases: {app: {privileges: [{grants: [CONNECT]}]}}",
])
def test_malformed_configuration(content):
    with pytest.raises(PolicyViolation):
        parse_declared_state(content)


@pytest.mark.parametrize("databases", [
    "{app: {privileges: [{role: ghost, grants: [CONNECT]}]}}",
    "{app: {privileges: [{role: casper, grants: [SUPERUSER]}]}}",
    "{app: {extensions: ['bad-ext']}}",
    "{'bad-db': {}}",
    "{app: {extensions: [123]}}",
    "{app: {privileges: [{role: casper, grants: [123]}]}}",
    "{app: {privileges: [{role: 123, grants: [CONNECT]}]}}",
])
def test_validate_rejects_databases(databases):
    declared = parse_declared_state(
        f"cluster: {{identifier: c, endpoint: e}}\nroles: {{casper: {{}}}}\ndatabases: {databases}"
    )
    with pytest.raises(PolicyViolation):
        declared.validate()


def test_validate_allows_grants_to_admin():
    declared = parse_declared_state(
        "cluster: {identifier: c, endpoint: e}\nadmin: {name: admin}\n"
        "databases: {app: {privileges: [{role: admin, grants: [ALL]}]}}"
    )
    declared.validate()


def test_validate_rejects_unsatisfiable_policy():
    declared = parse_declared_state("cluster: {identifier: c, endpoint: e}\npassword_policy: {length: 8}")
    with pytest.raises(PolicyViolation):
        declared.validate()


def test_load_from_config_file(tmp_path):
    path = tmp_path / "credentials.yaml"
    path.write_text(DECLARED_YAML)
    k8s = MagicMock()

    with patch.object(Config, 'CONFIG_FILE', str(path)):
        declared = load_declared_state(k8s)

    assert declared.target.identifier == "my-cluster"
    k8s.fetch_configmap.assert_not_called()


def test_unreadable_config_file(tmp_path):
    with patch.object(Config, 'CONFIG_FILE', str(tmp_path / "missing.yaml")):
        with pytest.raises(PolicyViolation):
            load_declared_state(MagicMock())


def test_load_from_configmap():
    k8s = MagicMock()
    k8s.fetch_configmap.return_value = DECLARED_YAML

    with patch.object(Config, 'CONFIG_FILE', ""):
        declared = load_declared_state(k8s)

    k8s.fetch_configmap.assert_called_once_with(Config.CONFIGMAP_NAME, Config.NAMESPACE, Config.CONFIGMAP_KEY)
    assert [r.name for r in declared.registry.roles] == ["casper", "analytics"]


def test_missing_configmap_returns_none():
    k8s = MagicMock()
    k8s.fetch_configmap.return_value = None
    with patch.object(Config, 'CONFIG_FILE', ""):
        assert load_declared_state(k8s) is None


def test_configmap_without_key_is_a_violation():
    k8s = MagicMock()
    k8s.fetch_configmap.return_value = ""
    with patch.object(Config, 'CONFIG_FILE', ""):
        with pytest.raises(PolicyViolation):
            load_declared_state(k8s)


def make_k8s_client():
    with patch('credential_controller.declared.config'), patch('credential_controller.declared.client'):
        k8s = KubernetesClient()
    k8s.v1 = MagicMock()
    return k8s


def test_fetch_configmap_retries_with_backoff():
    k8s = make_k8s_client()
    configmap = MagicMock()
    configmap.data = {'credentials.yaml': DECLARED_YAML}
    k8s.v1.read_namespaced_config_map.side_effect = [ApiException(status=500), configmap]

    with patch('credential_controller.declared.time.sleep') as sleep:
        content = k8s.fetch_configmap("rds-credentials-config", "postgres", "credentials.yaml")

    assert content == DECLARED_YAML
    sleep.assert_called_once_with(Config.RETRY_BACKOFF_BASE ** 0)


def test_fetch_configmap_not_found():
    k8s = make_k8s_client()
    k8s.v1.read_namespaced_config_map.side_effect = ApiException(status=404)
    assert k8s.fetch_configmap("missing", "postgres", "credentials.yaml") is None


def test_fetch_configmap_gives_up():
    k8s = make_k8s_client()
    k8s.v1.read_namespaced_config_map.side_effect = ApiException(status=503)

    with patch('credential_controller.declared.time.sleep'), patch.object(Config, 'MAX_RETRIES', 2):
        with pytest.raises(ApiException):
            k8s.fetch_configmap("rds-credentials-config", "postgres", "credentials.yaml")

    assert k8s.v1.read_namespaced_config_map.call_count == 3


def test_example_configuration_is_valid():
    path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "credentials.example.yaml")
    with patch.object(Config, 'CONFIG_FILE', path):
        declared = load_declared_state()

    declared.validate()
    assert declared.registry.role_names() == ["analytics", "casper", "reporting"]
    assert declared.target.path_for(declared.registry.roles[2]) == "rds/my-cluster/reporting/app"


@pytest.mark.parametrize("roles", [
    "{casper: {member_of: [123]}}",
    "{123: {}}",
])
def test_validate_rejects_non_identifier_roles(roles):
    declared = parse_declared_state(f"cluster: {{identifier: c, endpoint: e}}\nroles: {roles}")
    with pytest.raises(PolicyViolation):
        declared.validate()


def test_empty_policy_fields_keep_defaults():
    declared = parse_declared_state(
        "cluster: {identifier: c, endpoint: e}\npassword_policy:\n  length:\n  require:\n  exclude:\n"
    )
    assert declared.policy == PasswordPolicy()
    declared.validate()


def test_empty_exclude_string_turns_exclusions_off():
    declared = parse_declared_state("cluster: {identifier: c, endpoint: e}\npassword_policy: {exclude: ''}")
    assert declared.policy.exclude == ""
