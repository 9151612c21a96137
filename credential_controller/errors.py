"""
Error taxonomy for the credential controller.

Adapters translate botocore and psycopg2 exceptions into these classes so the
reconciler can record a per-identity failure reason without knowing which
backend raised it.
"""


class CredentialError(Exception):
    """Base class for every error the reconciler knows how to report"""

    reason = "Error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)
        self.message = message or self.reason


class KeyUnavailable(CredentialError):
    """KMS key missing, disabled, or access denied"""

    reason = "KeyUnavailable"
    retryable = True


class EncryptionFailed(CredentialError):
    reason = "EncryptionFailed"
    retryable = True


class DecryptionFailed(CredentialError):
    """Wrong key or corrupted ciphertext; retrying will not help"""

    reason = "DecryptionFailed"


class StoreUnavailable(CredentialError):
    reason = "StoreUnavailable"
    retryable = True


class SecretNotFound(CredentialError):
    reason = "NotFound"


class RoleApplyFailed(CredentialError):
    """The database rejected the role change, possibly because of conflicting live state"""

    reason = "RoleApplyFailed"


class PersistAfterApply(CredentialError):
    """The live credential changed but the secret store does not hold it"""

    reason = "PersistAfterApply"


class OperationTimeout(CredentialError):
    reason = "Timeout"


class PolicyViolation(CredentialError):
    """Pre-flight validation error; aborts the whole run"""

    reason = "PolicyViolation"


class Cancelled(CredentialError):
    reason = "Cancelled"
