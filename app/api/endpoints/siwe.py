import logging
from enum import Enum
from typing import List

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from app.core.dependencies import get_nonce_issuer, get_session_store, get_verifier
from app.core.errors import SiweAuthError
from app.core.nonce import NonceIssuer
from app.core.session_store import SessionStore
from app.core.verifier import MessageVerifier
import app.schemas.auth as schemas

logger = logging.getLogger(__name__)

router = APIRouter()
group_tags: List[str | Enum] = ["SIWE"]

VERIFY_FAILED = "An unexpected error occurred during verification. Please try again."
MISSING_HOST = "Could not determine server domain for verification."


def _error(status_code: int, message: str, with_ok: bool = True) -> JSONResponse:
    content = {"ok": False, "error": message} if with_ok else {"error": message}
    return JSONResponse(status_code=status_code, content=content)


@router.get(
    "/nonce",
    tags=group_tags,
    response_model=schemas.NonceResponse,
    status_code=status.HTTP_200_OK,
)
def request_nonce(
    response: Response,
    store: SessionStore = Depends(get_session_store),
    issuer: NonceIssuer = Depends(get_nonce_issuer),
):
    """
    Generate a single-use nonce and store it in the session cookie.

    Any previous nonce is discarded and the session is logged out.
    """
    try:
        nonce = issuer.request_nonce(store, response)
    except Exception:
        logger.exception("Failed to generate nonce")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to generate nonce", with_ok=False)
    return schemas.NonceResponse(nonce=nonce)


@router.post(
    "/verify",
    tags=group_tags,
    response_model=schemas.VerifyResponse,
    responses={
        400: {"model": schemas.ErrorResponse},
        500: {"model": schemas.ErrorResponse},
        503: {"model": schemas.ErrorResponse},
    },
    openapi_extra={
        "requestBody": {
            "content": {"application/json": {"schema": schemas.VerifyRequest.model_json_schema()}},
            "required": True,
        }
    },
)
async def verify(
    request: Request,
    response: Response,
    store: SessionStore = Depends(get_session_store),
    verifier: MessageVerifier = Depends(get_verifier),
):
    """
    Verify a signed SIWE message and log the session in.

    Body: {"message": "<EIP-4361 text>", "signature": "0x..."}

    The message domain must equal this server's Host header and the nonce must
    be the one stored in the session. On failure the pending nonce is kept.
    """
    host = request.headers.get("host")
    if not host:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, MISSING_HOST)

    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}

    try:
        result = await verifier.verify(
            store,
            body.get("message"),
            body.get("signature"),
            expected_domain=host,
            response=response,
        )
    except SiweAuthError:
        raise
    except Exception:
        logger.exception("Unexpected error during SIWE verification")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, VERIFY_FAILED)

    return schemas.VerifyResponse(
        address=result.address,
        chain_id=result.chain_id,
        signed_in_at=result.signed_in_at,
    )


@router.get(
    "/session",
    tags=group_tags,
    response_model=schemas.SessionStatusResponse,
    response_model_exclude_none=True,
)
def get_session(store: SessionStore = Depends(get_session_store)):
    """Current authentication state; unauthenticated sessions return {"isLoggedIn": false}."""
    session = store.load()
    if not session.is_authenticated:
        return schemas.SessionStatusResponse()
    return schemas.SessionStatusResponse(
        is_logged_in=True,
        address=session.address,
        chain_id=session.chain_id,
        signed_in_at=session.signed_in_at,
    )


@router.delete(
    "/session",
    tags=group_tags,
    response_model=schemas.OkResponse,
)
def destroy_session(response: Response, store: SessionStore = Depends(get_session_store)):
    """Log out: drop the session and expire the cookie."""
    try:
        store.destroy(response)
    except Exception:
        logger.exception("Failed to logout")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to logout")
    return schemas.OkResponse()
