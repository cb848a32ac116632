from __future__ import annotations


class CaseGuardError(Exception):
    """Base error for CaseGuard."""


class DecryptionFailed(CaseGuardError):
    """Ciphertext could not be decrypted (corrupt payload or key mismatch)."""


class StorageUnavailable(CaseGuardError):
    """Backing store could not be reached while serving a gate decision."""


class MfaNotConfigured(CaseGuardError):
    """MFA operation requested before a secret was provisioned."""


class MfaAlreadyEnabled(CaseGuardError):
    """MFA enrollment requested while MFA is already active."""
