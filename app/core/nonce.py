"""
Challenge nonces for Sign-In with Ethereum.

Authentication Flow:
1. Client calls GET /api/siwe/nonce -> NonceIssuer.request_nonce()
2. The nonce is written into the session cookie, replacing any pending one
3. Client embeds it in an EIP-4361 message and signs it with the wallet
4. MessageVerifier checks the signed nonce against the session and clears it

Only the latest issued nonce is ever valid. It has no expiry of its own; the
message's Expiration Time bounds how long a signature over it is accepted.
"""

import logging
import secrets
from typing import Callable

from fastapi import Response

from app.core.session_store import SessionStore

logger = logging.getLogger(__name__)

NONCE_NUM_BYTES = 32  # 32 bytes = 64 hex characters


def generate_nonce(num_bytes: int = NONCE_NUM_BYTES) -> str:
    """
    Generate a cryptographically secure random nonce for wallet authentication.

    Hex output satisfies the EIP-4361 nonce grammar (alphanumeric, 8+ chars).

    Args:
        num_bytes: Number of random bytes to generate (default: 32 = 64 hex chars)

    Returns:
        Hex-encoded random string (e.g., "a1b2c3d4...")
    """
    if num_bytes < 4:
        num_bytes = NONCE_NUM_BYTES
    return secrets.token_hex(num_bytes)


class NonceIssuer:
    def __init__(self, nonce_factory: Callable[[], str] = generate_nonce):
        self._nonce_factory = nonce_factory

    def request_nonce(self, store: SessionStore, response: Response) -> str:
        """
        Issue a fresh challenge and persist it in the session.

        A new challenge always ends any previous login on this session, so the
        identity fields are cleared together with is_logged_in.
        """
        nonce = self._nonce_factory()
        store.mutate(
            nonce=nonce,
            is_logged_in=False,
            address=None,
            chain_id=None,
            signed_in_at=None,
        )
        store.save(response)
        logger.debug("Issued nonce %s...", nonce[:8])
        return nonce
