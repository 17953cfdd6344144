"""Authentication and credential protection."""

from .credentials import CredentialCipher, derive_key
from .tokens import BEARER_PREFIX, Identity, TokenVerifier, issue_token

__all__ = ['BEARER_PREFIX', 'CredentialCipher', 'Identity', 'TokenVerifier', 'derive_key', 'issue_token']
