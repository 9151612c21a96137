"""
Encryption adapter over AWS KMS.

Plaintexts only exist in memory while a credential is generated or applied;
everything handed to the secret store goes through encrypt() first.
"""

import logging
from typing import Dict, Optional

from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from credential_controller.aws import TIMEOUT_ERRORS, build_client, error_code
from credential_controller.errors import (
    DecryptionFailed,
    EncryptionFailed,
    KeyUnavailable,
    OperationTimeout,
)

logger = logging.getLogger("credential-controller")

# KMS error codes meaning the key itself cannot be used right now
KEY_UNAVAILABLE_CODES = {
    'NotFoundException',
    'DisabledException',
    'AccessDeniedException',
    'AccessDeniedFault',
    'KMSInvalidStateException',
    'KeyUnavailableException',
}

# KMS error codes meaning the ciphertext will never decrypt with this key
BAD_CIPHERTEXT_CODES = {
    'InvalidCiphertextException',
    'IncorrectKeyException',
}


class KmsEncryptionAdapter:
    """Encrypts and decrypts credentials with a named KMS key"""

    def __init__(self, key_id: str, client: Optional[BaseClient] = None,
                 encryption_context: Optional[Dict[str, str]] = None):
        self.key_id = key_id
        self.client = client or build_client('kms')
        self.encryption_context = dict(encryption_context or {})

    def _context_kwargs(self) -> Dict[str, Dict[str, str]]:
        if not self.encryption_context:
            return {}
        return {'EncryptionContext': self.encryption_context}

    def encrypt(self, plaintext: str) -> bytes:
        """
        Encrypt a plaintext credential

        Args:
            plaintext: Credential to encrypt

        Returns:
            KMS ciphertext blob

        Raises:
            KeyUnavailable: Key missing, disabled or access denied
            EncryptionFailed: Transient KMS or transport error
            OperationTimeout: KMS did not answer in time
        """
        try:
            response = self.client.encrypt(
                KeyId=self.key_id,
                Plaintext=plaintext.encode('utf-8'),
                **self._context_kwargs()
            )
            return response['CiphertextBlob']
        except ClientError as e:
            code = error_code(e)
            if code in KEY_UNAVAILABLE_CODES:
                logger.error(f"KMS key {self.key_id} unavailable for encrypt: {code}")
                raise KeyUnavailable(f"KMS key {self.key_id}: {code}") from e
            logger.warning(f"KMS encrypt failed with {code}")
            raise EncryptionFailed(f"KMS encrypt failed: {code}") from e
        except TIMEOUT_ERRORS as e:
            raise OperationTimeout(f"KMS encrypt timed out: {e}") from e
        except BotoCoreError as e:
            raise EncryptionFailed(f"KMS encrypt failed: {e}") from e

    def decrypt(self, ciphertext: bytes) -> str:
        """
        Decrypt a ciphertext blob produced by encrypt() or by the operator

        Raises:
            DecryptionFailed: Wrong key or corrupted blob, not retryable
            KeyUnavailable: Key missing, denied, or KMS unavailable
            OperationTimeout: KMS did not answer in time
        """
        try:
            response = self.client.decrypt(
                KeyId=self.key_id,
                CiphertextBlob=ciphertext,
                **self._context_kwargs()
            )
            return response['Plaintext'].decode('utf-8')
        except ClientError as e:
            code = error_code(e)
            if code in BAD_CIPHERTEXT_CODES:
                logger.error(f"Ciphertext rejected by KMS key {self.key_id}: {code}")
                raise DecryptionFailed(f"KMS decrypt rejected ciphertext: {code}") from e
            logger.warning(f"KMS decrypt failed with {code}")
            raise KeyUnavailable(f"KMS key {self.key_id}: {code}") from e
        except UnicodeDecodeError as e:
            raise DecryptionFailed("Decrypted credential is not valid UTF-8") from e
        except TIMEOUT_ERRORS as e:
            raise OperationTimeout(f"KMS decrypt timed out: {e}") from e
        except BotoCoreError as e:
            raise KeyUnavailable(f"KMS decrypt failed: {e}") from e
