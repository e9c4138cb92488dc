"""
SIWE message verification.

MessageVerifier.verify() runs the checks below in order and stops at the first
failure. Nothing is written to the session unless every check passes, so a
failed attempt keeps the pending nonce and the client may retry with it.

1. request shape (message text, 0x hex signature)        -> ValidationError
2. pending nonce in the session                           -> ProtocolError
3. EIP-4361 parse, then required fields                   -> ValidationError / ProtocolError
4. domain == request host                                 -> ProtocolError
5. nonce == session nonce                                 -> ProtocolError
6. not expired                                            -> ProtocolError
7. not before notBefore                                   -> ProtocolError
8. signature (EOA offline, contract accounts on chain)    -> SignatureError
9. promote the session and consume the nonce
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Response
from web3 import Web3

from app.core.errors import ProtocolError, SignatureError, ValidationError
from app.core.session_store import SessionStore
from app.core.signature import decode_signature, verify_signature
from app.core.siwe_message import SiweMessage
from app.services.chain_oracle import ChainOracle

logger = logging.getLogger(__name__)

_HEX_SIGNATURE_RE = re.compile(r"^0x(?:[0-9a-fA-F]{2})+$")

INVALID_MESSAGE = "Missing or invalid 'message' field. Expected a string."
INVALID_SIGNATURE_FIELD = "Missing or invalid 'signature' field. Expected a hex string."
NO_PENDING_NONCE = "No nonce found in session. Please call GET /api/siwe/nonce first."
NONCE_MISMATCH = "Nonce mismatch. Please request a new nonce and try again."
MESSAGE_EXPIRED = "Message has expired. Please sign a new message."
MESSAGE_NOT_YET_VALID = "Message is not yet valid. Please wait and try again."
SIGNATURE_MISMATCH = "Invalid signature. The message was not signed by the claimed address."


@dataclass(frozen=True)
class VerificationResult:
    address: str
    chain_id: int
    signed_in_at: int  # unix epoch, milliseconds


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def describe_verification_failure(
    message: SiweMessage,
    expected_domain: str,
    expected_nonce: str,
    now: datetime,
) -> Optional[str]:
    """
    Reason for the first failing message check, or None if all pass.

    Order: required fields, domain, nonce, expiry, not-before. A None result
    after a failed signature check means the signature itself is at fault.
    """
    try:
        message.validate_required_fields()
    except ProtocolError as e:
        return e.message
    if message.domain != expected_domain:
        return f"Domain mismatch. Expected: {expected_domain}, Got: {message.domain}"
    if not secrets.compare_digest(message.nonce, expected_nonce):
        return NONCE_MISMATCH
    if message.is_expired(now):
        return MESSAGE_EXPIRED
    if message.is_not_yet_valid(now):
        return MESSAGE_NOT_YET_VALID
    return None


class MessageVerifier:
    def __init__(
        self,
        resolve_oracle: Callable[[int], ChainOracle],
        clock: Callable[[], datetime] = utc_now,
    ):
        self._resolve_oracle = resolve_oracle
        self._clock = clock

    @staticmethod
    def _check_shape(message, signature) -> bytes:
        if not isinstance(message, str) or not message.strip():
            raise ValidationError(INVALID_MESSAGE)
        if not isinstance(signature, str) or not _HEX_SIGNATURE_RE.match(signature):
            raise ValidationError(INVALID_SIGNATURE_FIELD)
        return decode_signature(signature)

    async def verify(
        self,
        store: SessionStore,
        message,
        signature,
        *,
        expected_domain: str,
        response: Response,
    ) -> VerificationResult:
        """
        Verify a signed SIWE message and log the session in.

        Args:
            store: The request's session
            message: EIP-4361 text as signed by the wallet
            signature: 0x hex signature
            expected_domain: This server's host (Host header, port included)
            response: Receives the updated session cookie on success

        Raises:
            ValidationError, ProtocolError, SignatureError: verification failed, session untouched
            TransientError: the chain node for a contract account could not be reached
        """
        signature_bytes = self._check_shape(message, signature)

        session = store.load()
        if not session.has_pending_nonce:
            if session.is_logged_in:
                # The nonce was consumed by the sign-in that logged this session in
                raise ProtocolError(NONCE_MISMATCH)
            raise ProtocolError(NO_PENDING_NONCE)

        siwe = SiweMessage.parse(message)
        siwe.validate_required_fields()

        failure = describe_verification_failure(siwe, expected_domain, session.nonce, self._clock())
        if failure:
            logger.info("SIWE verification rejected for %s: %s", siwe.address, failure)
            raise ProtocolError(failure)

        is_valid = await verify_signature(
            siwe.address, message, signature_bytes, siwe.chain_id, self._resolve_oracle
        )
        if not is_valid:
            # The oracle round trip takes time, the message may have expired meanwhile
            failure = describe_verification_failure(siwe, expected_domain, session.nonce, self._clock())
            logger.info("SIWE verification rejected for %s: %s", siwe.address, failure or "bad signature")
            if failure:
                raise ProtocolError(failure)
            raise SignatureError(SIGNATURE_MISMATCH)

        address = Web3.to_checksum_address(siwe.address)
        signed_in_at = to_epoch_ms(self._clock())
        store.mutate(
            nonce=None,
            is_logged_in=True,
            address=address,
            chain_id=siwe.chain_id,
            signed_in_at=signed_in_at,
        )
        store.save(response)

        logger.info("Signed in %s on chain %s", address, siwe.chain_id)
        return VerificationResult(address=address, chain_id=siwe.chain_id, signed_in_at=signed_in_at)
