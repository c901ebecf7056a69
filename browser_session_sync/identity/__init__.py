"""
Credentials for the remote session API.

Provides the bearer-token source the sync engine consults before every
remote call.
"""

from .provider import (
    AUTH_TOKEN_KEY,
    CredentialProvider,
    KeyValueCredentialProvider,
    StaticCredentialProvider,
)

__all__ = [
    "AUTH_TOKEN_KEY",
    "CredentialProvider",
    "StaticCredentialProvider",
    "KeyValueCredentialProvider",
]
