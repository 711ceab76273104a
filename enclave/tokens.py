# enclave/tokens.py
"""
Access/refresh token issuance and verification.

Access tokens carry ``userId``, ``username`` and ``role``; refresh tokens carry
only ``userId``. Both are signed with their own secret and carry ``iss``,
``aud``, ``iat``, ``exp``, ``jti`` and ``type``. Persisting what was issued is
the session registry's job (see ``enclave.auth``).
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping

import jwt

from enclave.errors import TokenExpired, TokenInvalid

logger = logging.getLogger("enclave.auth")

ACCESS = "access"
REFRESH = "refresh"


class TokenService:
    def __init__(self, config: Mapping[str, Any]):
        self.access_secret = config["JWT_SECRET"]
        self.refresh_secret = config["JWT_REFRESH_SECRET"]
        self.algorithm = config.get("JWT_ALGORITHM", "HS256")
        self.issuer = config.get("JWT_ISSUER", "phoenix-industries")
        self.audience = config.get("JWT_AUDIENCE", "phoenix-terminal")
        self.access_ttl = timedelta(minutes=int(config.get("JWT_ACCESS_EXPIRES_MINUTES", 15)))
        self.refresh_ttl = timedelta(days=int(config.get("JWT_REFRESH_EXPIRES_DAYS", 7)))

    @property
    def expires_in(self) -> int:
        """Access token lifetime in seconds."""
        return int(self.access_ttl.total_seconds())

    def refresh_expiry(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None) + self.refresh_ttl

    def _encode(self, claims: Dict[str, Any], secret: str, ttl: timedelta, typ: str) -> str:
        now = datetime.now(timezone.utc)
        payload = dict(claims)
        payload.update({
            "type": typ,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + ttl,
            # two tokens minted in the same second must still differ
            "jti": str(uuid.uuid4()),
        })
        token = jwt.encode(payload, secret, algorithm=self.algorithm)
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        return token

    def issue_pair(self, user_id: str, username: str, role: str) -> Dict[str, Any]:
        access = self._encode(
            {"userId": user_id, "username": username, "role": role},
            self.access_secret, self.access_ttl, ACCESS,
        )
        refresh = self._encode({"userId": user_id}, self.refresh_secret, self.refresh_ttl, REFRESH)
        return {"accessToken": access, "refreshToken": refresh, "expiresIn": self.expires_in}

    def _decode(self, token: str, secret: str, typ: str) -> Dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalid()
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired()
        except jwt.InvalidTokenError as e:
            logger.debug("Rejected %s token: %s", typ, e)
            raise TokenInvalid()
        if claims.get("type") != typ or not claims.get("userId"):
            raise TokenInvalid()
        return claims

    def verify_access(self, token: str) -> Dict[str, Any]:
        return self._decode(token, self.access_secret, ACCESS)

    def verify_refresh(self, token: str) -> Dict[str, Any]:
        return self._decode(token, self.refresh_secret, REFRESH)
