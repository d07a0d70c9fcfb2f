# =============================================================================
# skilllab_core/auth/__init__.py
# Credential Lookup
# =============================================================================

from .credentials import (
    AuthService,
    CredentialIndex,
    hash_password,
    verify_secret,
)

__all__ = [
    "AuthService",
    "CredentialIndex",
    "hash_password",
    "verify_secret",
]
