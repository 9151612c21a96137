"""
Secret store adapter over AWS Secrets Manager.

Each identity's credential lives in one secret whose name is the
deterministic secret path. The SecretString is a small JSON document holding
the KMS ciphertext (base64), the keyed plaintext fingerprint, the granted
memberships and a monotonic version counter.
"""

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence

from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from credential_controller.aws import TIMEOUT_ERRORS, build_client, error_code
from credential_controller.errors import OperationTimeout, SecretNotFound, StoreUnavailable
from credential_controller.models import SecretRecord

logger = logging.getLogger("credential-controller")

NOT_FOUND_CODES = {'ResourceNotFoundException'}


def encode_record(ciphertext: bytes, fingerprint: str, member_of: Sequence[str],
                  version: int, last_rotated: datetime) -> str:
    return json.dumps({
        'ciphertext': base64.b64encode(ciphertext).decode('ascii'),
        'fingerprint': fingerprint,
        'member_of': list(member_of),
        'version': version,
        'last_rotated': last_rotated.isoformat(),
    }, sort_keys=True)


def decode_record(path: str, secret_string: str, arn: Optional[str] = None) -> SecretRecord:
    data = json.loads(secret_string)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, found {type(data).__name__}")
    if not isinstance(data['fingerprint'], str):
        raise ValueError("fingerprint is not a string")
    return SecretRecord(
        path=path,
        ciphertext=base64.b64decode(data['ciphertext']),
        fingerprint=data['fingerprint'],
        version=int(data['version']),
        last_rotated=datetime.fromisoformat(data['last_rotated']),
        member_of=tuple(data.get('member_of', [])),
        arn=arn,
    )


class SecretsManagerStore:
    """Path-addressed, versioned credential storage"""

    def __init__(self, client: Optional[BaseClient] = None, tags: Optional[Dict[str, str]] = None):
        self.client = client or build_client('secretsmanager')
        self.tags = dict(tags or {})

    def get(self, path: str) -> SecretRecord:
        """
        Fetch the current record stored at path

        Raises:
            SecretNotFound: Nothing has been stored at path yet
            StoreUnavailable: Secrets Manager could not be reached or refused the call
            OperationTimeout: Secrets Manager did not answer in time
        """
        try:
            response = self.client.get_secret_value(SecretId=path)
        except ClientError as e:
            code = error_code(e)
            if code in NOT_FOUND_CODES:
                raise SecretNotFound(f"No secret stored at {path}") from e
            logger.warning(f"Error reading secret {path}: {code}")
            raise StoreUnavailable(f"Secrets Manager read of {path} failed: {code}") from e
        except TIMEOUT_ERRORS as e:
            raise OperationTimeout(f"Secrets Manager read of {path} timed out") from e
        except BotoCoreError as e:
            raise StoreUnavailable(f"Secrets Manager read of {path} failed: {e}") from e

        secret_string = response.get('SecretString')
        if not secret_string:
            raise SecretNotFound(f"Secret {path} has no current value")
        try:
            return decode_record(path, secret_string, arn=response.get('ARN'))
        except (ValueError, KeyError, TypeError) as e:
            raise StoreUnavailable(f"Secret {path} holds an unreadable record: {e}") from e

    def put(self, path: str, ciphertext: bytes, fingerprint: str,
            member_of: Sequence[str] = ()) -> SecretRecord:
        """
        Idempotent upsert of the credential at path

        A new version is only written when the content differs from the
        current version; identical content returns the current record.

        Args:
            path: Secret path
            ciphertext: KMS ciphertext of the credential
            fingerprint: Keyed fingerprint of the plaintext
            member_of: Memberships granted alongside the credential

        Returns:
            The stored SecretRecord
        """
        member_of = tuple(member_of)
        try:
            current = self.get(path)
        except SecretNotFound:
            current = None

        if current is not None and (
            current.ciphertext == ciphertext
            and current.fingerprint == fingerprint
            and current.member_of == member_of
        ):
            logger.debug(f"Secret {path} already holds this content (version {current.version})")
            return current

        version = current.version + 1 if current else 1
        now = datetime.now(timezone.utc)
        payload = encode_record(ciphertext, fingerprint, member_of, version, now)

        try:
            if current is None:
                response = self._create(path, payload)
            else:
                response = self.client.put_secret_value(SecretId=path, SecretString=payload)
        except ClientError as e:
            code = error_code(e)
            logger.error(f"Error writing secret {path}: {code}")
            raise StoreUnavailable(f"Secrets Manager write of {path} failed: {code}") from e
        except TIMEOUT_ERRORS as e:
            raise OperationTimeout(f"Secrets Manager write of {path} timed out") from e
        except BotoCoreError as e:
            raise StoreUnavailable(f"Secrets Manager write of {path} failed: {e}") from e

        logger.info(f"Stored secret {path} version {version}")
        return SecretRecord(
            path=path,
            ciphertext=ciphertext,
            fingerprint=fingerprint,
            version=version,
            last_rotated=now,
            member_of=member_of,
            arn=response.get('ARN') or (current.arn if current else None),
        )

    def _create(self, path: str, payload: str) -> Dict:
        kwargs = {
            'Name': path,
            'SecretString': payload,
            'Description': f"Managed credential for {path}",
        }
        if self.tags:
            kwargs['Tags'] = [{'Key': k, 'Value': v} for k, v in sorted(self.tags.items())]
        try:
            return self.client.create_secret(**kwargs)
        except ClientError as e:
            # A secret scheduled for deletion or with no value yet still owns the name
            if error_code(e) != 'ResourceExistsException':
                raise
            return self.client.put_secret_value(SecretId=path, SecretString=payload)
