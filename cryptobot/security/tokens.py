"""Bearer token verification.

Tokens are HS256 JWTs carrying the identity provider subject in ``sub`` and
optional ``email``, ``name`` and ``picture`` claims.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from ..config import SecurityConfig
from ..errors import Unauthorized

logger = logging.getLogger(__name__)

BEARER_PREFIX = 'Bearer '


@dataclass(frozen=True)
class Identity:
    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


class TokenVerifier:
    def __init__(self, config: SecurityConfig) -> None:
        self._config = config

    def verify(self, token: str) -> Identity:
        try:
            claims = jwt.decode(
                token,
                self._config.jwt_secret,
                algorithms=[self._config.jwt_algorithm],
                audience=self._config.jwt_audience,
                options={'verify_aud': self._config.jwt_audience is not None},
            )
        except ExpiredSignatureError as error:
            raise Unauthorized('Token has expired') from error
        except JWTError as error:
            logger.debug('Rejected bearer token: %s', error)
            raise Unauthorized('Invalid or expired token') from error

        subject = claims.get('sub')
        if not subject:
            raise Unauthorized('Token has no subject')
        return Identity(
            subject=str(subject),
            email=claims.get('email'),
            name=claims.get('name'),
            picture=claims.get('picture'),
        )

    def verify_header(self, header: Optional[str]) -> Identity:
        if not header or not header.startswith(BEARER_PREFIX):
            raise Unauthorized('No valid authorization token provided')
        return self.verify(header[len(BEARER_PREFIX):].strip())


def issue_token(
    config: SecurityConfig,
    subject: str,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
    picture: Optional[str] = None,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    """Sign a token accepted by :class:`TokenVerifier` (development and tests)."""
    now = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {'sub': subject, 'iat': now, 'exp': now + expires_in}
    if email:
        claims['email'] = email
    if name:
        claims['name'] = name
    if picture:
        claims['picture'] = picture
    if config.jwt_audience:
        claims['aud'] = config.jwt_audience
    return jwt.encode(claims, config.jwt_secret, algorithm=config.jwt_algorithm)


__all__ = ['BEARER_PREFIX', 'Identity', 'TokenVerifier', 'issue_token']
