"""
Cryptographically strong password generation
"""

import secrets
import string
from typing import Dict

from credential_controller.errors import PolicyViolation
from credential_controller.models import PasswordPolicy

MIN_LENGTH = 16
MAX_LENGTH = 128
MAX_ATTEMPTS = 1000

CHARACTER_CLASSES: Dict[str, str] = {
    'upper': string.ascii_uppercase,
    'lower': string.ascii_lowercase,
    'digit': string.digits,
    'symbol': string.punctuation,
}


def _class_alphabets(policy: PasswordPolicy) -> Dict[str, str]:
    return {
        name: ''.join(c for c in CHARACTER_CLASSES[name] if c not in policy.exclude)
        for name in policy.require
    }


def validate_policy(policy: PasswordPolicy) -> None:
    """
    Pre-flight check that a policy can be satisfied

    Raises:
        PolicyViolation: Length out of range, unknown or empty character class
    """
    if not MIN_LENGTH <= policy.length <= MAX_LENGTH:
        raise PolicyViolation(
            f"Password length {policy.length} outside [{MIN_LENGTH}, {MAX_LENGTH}]"
        )
    if not policy.require:
        raise PolicyViolation("Password policy requires no character class")
    unknown = set(policy.require) - set(CHARACTER_CLASSES)
    if unknown:
        raise PolicyViolation(f"Unknown character classes: {sorted(unknown)}")
    for name, alphabet in _class_alphabets(policy).items():
        if not alphabet:
            raise PolicyViolation(f"Character class '{name}' is empty after exclusions")


def satisfies(password: str, policy: PasswordPolicy) -> bool:
    if len(password) != policy.length:
        return False
    return all(
        any(c in alphabet for c in password)
        for alphabet in _class_alphabets(policy).values()
    )


def generate(policy: PasswordPolicy) -> str:
    """
    Generate a password meeting every requirement of policy

    Whole samples are drawn uniformly from the union of the required classes
    and rejected until one contains every class.

    Raises:
        PolicyViolation: The policy is invalid or no sample satisfied it
    """
    validate_policy(policy)
    alphabet = ''.join(sorted(set(''.join(_class_alphabets(policy).values()))))

    for _ in range(MAX_ATTEMPTS):
        candidate = ''.join(secrets.choice(alphabet) for _ in range(policy.length))
        if satisfies(candidate, policy):
            return candidate

    raise PolicyViolation(f"No password satisfied the policy after {MAX_ATTEMPTS} attempts")
