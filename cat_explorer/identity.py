"""Identity: Google ID-token verification, signed sessions and the admin policy."""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import httpx
import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .errors import Forbidden, Unauthorized, UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
SESSION_AUDIENCE = "cat-explorer"
SESSION_ALGORITHM = "HS256"
ADMIN_ROLE = "admin"

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    subject: str
    email: Optional[str] = None


class IdentityVerifier:
    """Turns an externally issued credential into an :class:`Identity`, or ``None``."""

    def verify(self, credential: str) -> Optional[Identity]:
        raise NotImplementedError


class GoogleIdentityVerifier(IdentityVerifier):
    def __init__(self, http_client: httpx.Client, client_id: Optional[str] = None,
                 tokeninfo_url: str = GOOGLE_TOKENINFO_URL):
        self._http = http_client
        self._client_id = client_id
        self._tokeninfo_url = tokeninfo_url

    def verify(self, credential: str) -> Optional[Identity]:
        try:
            response = self._http.get(self._tokeninfo_url, params={"id_token": credential})
        except httpx.TimeoutException as e:
            logger.exception("Google tokeninfo timed out: %s", e)
            raise UpstreamTimeout("Identity provider timed out") from e
        except httpx.RequestError as e:
            logger.exception("Google tokeninfo request failed: %s", e)
            raise UpstreamUnavailable("Identity provider unavailable") from e

        if response.status_code >= 500:
            logger.error(
                "Google tokeninfo failed: status=%d, body=%s",
                response.status_code,
                response.text,
            )
            raise UpstreamUnavailable("Identity provider unavailable")
        if response.status_code != 200:
            logger.info("Google rejected ID token: status=%d", response.status_code)
            return None

        try:
            claims = response.json()
        except ValueError as e:
            logger.exception("Google tokeninfo returned a non-JSON body: %s", e)
            raise UpstreamUnavailable("Identity provider unavailable") from e
        if not isinstance(claims, dict):
            logger.error("Google tokeninfo returned unexpected payload: %r", claims)
            raise UpstreamUnavailable("Identity provider unavailable")
        if self._client_id and claims.get("aud") != self._client_id:
            logger.warning("ID token audience mismatch: aud=%s", claims.get("aud"))
            return None
        if str(claims.get("email_verified", "false")).lower() != "true":
            logger.info("ID token email not verified for sub=%s", claims.get("sub"))
            return None
        if not claims.get("sub"):
            return None
        return Identity(subject=str(claims["sub"]), email=claims.get("email"))


class SessionTokens:
    """HS256 session tokens carrying an identity for ``ttl_seconds``."""

    def __init__(self, secret: str, ttl_seconds: int = 3600):
        self._secret = secret
        self.ttl_seconds = ttl_seconds

    def issue(self, identity: Identity, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        payload = {
            "sub": identity.subject,
            "email": identity.email,
            "aud": SESSION_AUDIENCE,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.ttl_seconds)).timestamp()),
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self._secret, algorithm=SESSION_ALGORITHM)

    def decode(self, token: str) -> Optional[Identity]:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[SESSION_ALGORITHM],
                audience=SESSION_AUDIENCE,
            )
        except jwt.ExpiredSignatureError:
            logger.info("Session token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.info("Invalid session token: %s", e)
            return None
        if not payload.get("sub"):
            return None
        return Identity(subject=payload["sub"], email=payload.get("email"))


class AdminPolicy:
    def __init__(self, admin_emails: Iterable[str]):
        self._admins = frozenset(e.strip().lower() for e in admin_emails if e and e.strip())

    def has_role(self, identity: Optional[Identity], role: str) -> bool:
        if identity is None or not identity.email:
            return False
        if role == ADMIN_ROLE:
            return identity.email.lower() in self._admins
        return False


def get_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Identity]:
    if credentials is None:
        return None
    return request.app.state.session_tokens.decode(credentials.credentials)


def require_identity(identity: Optional[Identity] = Depends(get_identity)) -> Identity:
    if identity is None:
        raise Unauthorized()
    return identity


def require_admin(request: Request, identity: Identity = Depends(require_identity)) -> Identity:
    if not request.app.state.admin_policy.has_role(identity, ADMIN_ROLE):
        logger.info("Denied admin action to %s", identity.email)
        raise Forbidden("Administrator access required")
    return identity
