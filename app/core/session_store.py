"""
Encrypted client-held session storage.

The session record never lives on the server. It is serialized to JSON,
encrypted and authenticated with Fernet (AES-128-CBC + HMAC-SHA256) and sent
back to the browser as an http-only cookie. Every request decrypts its own
copy, so there is no shared server state and nothing to lock.

Flow per request:
1. get_session_store() builds a SessionStore from the request cookie
2. load() decrypts the token (falls back to the default session)
3. mutate() applies a validated change
4. save() / destroy() write the Set-Cookie header on the response
"""

import base64
import json
import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from fastapi import Response

from app.core.config import Settings, resolve_session_secret
from app.models.auth import SessionData

logger = logging.getLogger(__name__)

KEY_DERIVATION_INFO = b"siwe-session-cookie-v1"


class SessionCodec:
    """Encrypts and decrypts session records."""

    def __init__(self, secret: str, max_age_seconds: int):
        key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=KEY_DERIVATION_INFO,
        ).derive(secret.encode("utf-8"))
        self._fernet = Fernet(base64.urlsafe_b64encode(key))
        self._max_age_seconds = max_age_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionCodec":
        """Raises ConfigurationError when no usable secret is configured."""
        return cls(resolve_session_secret(settings), settings.session_max_age_seconds)

    def encode(self, session: SessionData) -> str:
        payload = json.dumps(session.model_dump(), separators=(",", ":")).encode("utf-8")
        return self._fernet.encrypt(payload).decode("ascii")

    def decode(self, token: str) -> SessionData:
        """
        Raises:
            InvalidToken: tampered, foreign or older than the session lifetime
            ValueError: decrypted payload is not a valid session record
        """
        payload = self._fernet.decrypt(token.encode("ascii"), ttl=self._max_age_seconds)
        return SessionData.model_validate(json.loads(payload))


@dataclass(frozen=True)
class CookiePolicy:
    name: str
    max_age: int
    secure: bool
    path: str = "/"
    httponly: bool = True
    samesite: str = "lax"

    @classmethod
    def from_settings(cls, settings: Settings) -> "CookiePolicy":
        return cls(
            name=settings.SESSION_COOKIE_NAME,
            max_age=settings.session_max_age_seconds,
            secure=settings.is_production,
        )


class SessionStore:
    """One request's view of the session cookie."""

    def __init__(self, codec: SessionCodec, cookie: CookiePolicy, token: Optional[str] = None):
        self._codec = codec
        self._cookie = cookie
        self._token = token
        self._session: Optional[SessionData] = None

    def load(self) -> SessionData:
        """Decrypt the cookie token. Missing or unreadable tokens give the default session."""
        if self._session is None:
            self._session = self._read_token()
        return self._session

    def _read_token(self) -> SessionData:
        if not self._token:
            return SessionData()
        try:
            return self._codec.decode(self._token)
        except (InvalidToken, ValueError, UnicodeError) as e:
            logger.debug("Discarding unreadable session token: %s", type(e).__name__)
            return SessionData()

    def mutate(self, **fields) -> SessionData:
        """
        Apply a change to the loaded session.

        The merged record is validated before it replaces the current one, so an
        invalid combination raises and leaves the session untouched.
        """
        self._session = self.load().with_changes(**fields)
        return self._session

    def save(self, response: Response) -> None:
        """Re-encrypt the session and emit it as a cookie."""
        token = self._codec.encode(self.load())
        response.set_cookie(
            key=self._cookie.name,
            value=token,
            max_age=self._cookie.max_age,
            path=self._cookie.path,
            secure=self._cookie.secure,
            httponly=self._cookie.httponly,
            samesite=self._cookie.samesite,
        )
        self._token = token

    def destroy(self, response: Response) -> None:
        """Drop the session and expire the cookie now."""
        self._session = SessionData()
        self._token = None
        response.delete_cookie(
            key=self._cookie.name,
            path=self._cookie.path,
            secure=self._cookie.secure,
            httponly=self._cookie.httponly,
            samesite=self._cookie.samesite,
        )
