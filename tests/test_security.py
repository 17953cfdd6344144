"""Tests for :mod:`cryptobot.security`."""

from __future__ import annotations

import base64
from datetime import timedelta

import pytest

from cryptobot.config import SecurityConfig
from cryptobot.errors import CredentialsMissing, TradingError, Unauthorized
from cryptobot.security import CredentialCipher, TokenVerifier, derive_key, issue_token

SECRET = 'unit-test-signing-secret'


def _config(**overrides) -> SecurityConfig:
    return SecurityConfig(jwt_secret=SECRET, **overrides)


def test_issued_token_round_trips_identity() -> None:
    config = _config()
    token = issue_token(config, 'uid-42', email='ada@example.com', name='Ada')

    identity = TokenVerifier(config).verify_header(f'Bearer {token}')

    assert identity.subject == 'uid-42'
    assert identity.email == 'ada@example.com'
    assert identity.name == 'Ada'
    assert identity.picture is None


@pytest.mark.parametrize('header', [None, '', 'Token abc', 'Basic dXNlcjpwYXNz'])
def test_missing_or_malformed_headers_are_rejected(header) -> None:
    with pytest.raises(Unauthorized, match='No valid authorization token provided'):
        TokenVerifier(_config()).verify_header(header)


def test_expired_tokens_are_rejected() -> None:
    config = _config()
    token = issue_token(config, 'uid-42', expires_in=timedelta(seconds=-30))

    with pytest.raises(Unauthorized, match='expired'):
        TokenVerifier(config).verify(token)


def test_tokens_signed_with_another_secret_are_rejected() -> None:
    token = issue_token(SecurityConfig(jwt_secret='someone-else'), 'uid-42')

    with pytest.raises(Unauthorized, match='Invalid or expired token'):
        TokenVerifier(_config()).verify(token)


def test_audience_is_enforced_when_configured() -> None:
    config = _config(jwt_audience='cryptobot')
    token = issue_token(config, 'uid-42')
    foreign = issue_token(_config(jwt_audience='other-app'), 'uid-42')

    assert TokenVerifier(config).verify(token).subject == 'uid-42'
    with pytest.raises(Unauthorized):
        TokenVerifier(config).verify(foreign)


def test_credentials_are_encrypted_at_rest() -> None:
    cipher = CredentialCipher('correct horse battery staple')

    sealed = cipher.encrypt('api-secret-value')

    assert sealed != 'api-secret-value'
    assert sealed.count('.') == 4
    assert cipher.decrypt(sealed) == 'api-secret-value'
    assert cipher.encrypt(None) is None


def test_decrypting_with_another_key_fails() -> None:
    sealed = CredentialCipher('key-one').encrypt('api-secret-value')

    with pytest.raises(TradingError, match='could not be decrypted'):
        CredentialCipher('key-two').decrypt(sealed)


def test_missing_key_raises_credentials_missing() -> None:
    cipher = CredentialCipher(None)

    assert not cipher.configured
    with pytest.raises(CredentialsMissing):
        cipher.encrypt('api-key')


def test_derive_key_accepts_encoded_keys() -> None:
    raw = bytes(range(32))

    assert derive_key(base64.b64encode(raw).decode('ascii')) == raw
    assert derive_key(raw.hex()) == raw
    assert len(derive_key('a passphrase')) == 32
