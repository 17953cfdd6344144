"""Encryption of venue API credentials at rest (JWE, direct key, A256GCM)."""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
from typing import Optional

from jose import jwe
from jose.constants import ALGORITHMS
from jose.exceptions import JOSEError

from ..config import SecurityConfig
from ..errors import CredentialsMissing, TradingError

logger = logging.getLogger(__name__)

_HEX_KEY = re.compile(r'^[0-9a-fA-F]{64}$')


def derive_key(raw: str) -> bytes:
    """Accept a base64 or hex encoded 256-bit key, else hash the passphrase."""
    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        decoded = b''
    if len(decoded) == 32:
        return decoded
    if _HEX_KEY.match(raw):
        return bytes.fromhex(raw)
    return hashlib.sha256(raw.encode('utf-8')).digest()


class CredentialCipher:
    def __init__(self, raw_key: Optional[str]) -> None:
        self._key = derive_key(raw_key) if raw_key else None

    @classmethod
    def from_config(cls, config: SecurityConfig) -> 'CredentialCipher':
        return cls(config.data_encryption_key)

    @property
    def configured(self) -> bool:
        return self._key is not None

    def _require_key(self) -> bytes:
        if self._key is None:
            raise CredentialsMissing('DATA_ENCRYPTION_KEY is required to encrypt exchange credentials')
        return self._key

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        token = jwe.encrypt(value, self._require_key(), algorithm=ALGORITHMS.DIR, encryption=ALGORITHMS.A256GCM)
        return token.decode('ascii') if isinstance(token, bytes) else token

    def decrypt(self, payload: Optional[str]) -> Optional[str]:
        if not payload:
            return payload
        try:
            plaintext = jwe.decrypt(payload, self._require_key())
        except JOSEError as error:
            logger.error('Stored credentials could not be decrypted: %s', error)
            raise TradingError('Stored exchange credentials could not be decrypted') from error
        return plaintext.decode('utf-8')


__all__ = ['CredentialCipher', 'derive_key']
