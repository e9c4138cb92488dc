"""
FastAPI dependencies for the SIWE endpoints.

Every long-lived component (settings, session codec, nonce issuer, verifier)
is built once by create_app() and kept on app.state. The dependencies below
only read them back; the one per-request object is the SessionStore wrapping
the incoming session cookie.

Usage in endpoints:
    @router.get("/session")
    def get_session(store: SessionStore = Depends(get_session_store)):
        return store.load()
"""

from fastapi import Request

from app.core.config import Settings
from app.core.nonce import NonceIssuer
from app.core.session_store import SessionStore
from app.core.verifier import MessageVerifier


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_store(request: Request) -> SessionStore:
    """Session for this request, read from the cookie named by the cookie policy."""
    cookie = request.app.state.cookie_policy
    return SessionStore(
        codec=request.app.state.session_codec,
        cookie=cookie,
        token=request.cookies.get(cookie.name),
    )


def get_nonce_issuer(request: Request) -> NonceIssuer:
    return request.app.state.nonce_issuer


def get_verifier(request: Request) -> MessageVerifier:
    return request.app.state.verifier
