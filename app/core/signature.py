"""
Ethereum Signature Verification

Checks that an EIP-191 personal_sign signature over a SIWE message belongs to
the claimed address. Two kinds of accounts are handled:

1. Plain key holders (EOA)
   - 65-byte secp256k1 signature
   - signer recovered offline with eth_account, compared case-insensitively

2. Smart-contract accounts
   - ERC-1271: deployed contract answers isValidSignature(hash, sig) with 0x1626ba7e
   - ERC-6492: signature wrapped as abi.encode(factory, factoryCalldata, innerSig)
     followed by a 32-byte magic suffix. When the account has no code yet, the
     factory deployment and the ERC-1271 call are simulated together, nothing
     is persisted on chain.

Only the contract path needs a ChainOracle. Transport failures surface as
TransientError from the oracle; a reverting call is an invalid signature.
"""

import logging
from typing import Callable, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from eth_account.messages import defunct_hash_message, encode_defunct
from web3.exceptions import ContractLogicError

from app.services.chain_oracle import ChainOracle

logger = logging.getLogger(__name__)

EOA_SIGNATURE_LENGTH = 65
ERC6492_MAGIC_SUFFIX = bytes.fromhex("6492" * 16)
EIP1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")
# isValidSignature(bytes32,bytes) selector is the magic value itself
IS_VALID_SIGNATURE_SELECTOR = EIP1271_MAGIC_VALUE


def decode_signature(signature: str) -> bytes:
    """Helper: Decode a 0x-prefixed hex signature to bytes."""
    value = signature.strip()
    if value[:2].lower() == "0x":
        value = value[2:]
    return bytes.fromhex(value)


def hash_personal_message(message: str) -> bytes:
    """EIP-191 version 0x45 hash: keccak256("\\x19Ethereum Signed Message:\\n" + len + message)"""
    return bytes(defunct_hash_message(text=message))


def recover_signer(message: str, signature: bytes) -> Optional[str]:
    """Recover the EOA that produced ``signature`` over ``message``, or None if it is malformed."""
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception:
        return None


def is_erc6492_signature(signature: bytes) -> bool:
    return len(signature) > len(ERC6492_MAGIC_SUFFIX) and signature.endswith(ERC6492_MAGIC_SUFFIX)


def unwrap_erc6492(signature: bytes) -> Tuple[str, bytes, bytes]:
    """
    Split an ERC-6492 wrapped signature.

    Returns:
        (factory address, factory calldata, inner signature)

    Raises:
        ValueError: if the payload is not abi-encoded (address, bytes, bytes)
    """
    try:
        factory, factory_calldata, inner = abi_decode(
            ["address", "bytes", "bytes"], signature[: -len(ERC6492_MAGIC_SUFFIX)]
        )
    except DecodingError as e:
        raise ValueError(f"malformed ERC-6492 signature: {e}")
    return factory, factory_calldata, inner


def encode_is_valid_signature_call(digest: bytes, signature: bytes) -> bytes:
    return IS_VALID_SIGNATURE_SELECTOR + abi_encode(["bytes32", "bytes"], [digest, signature])


def _is_magic_value(return_data: bytes) -> bool:
    return return_data[:4] == EIP1271_MAGIC_VALUE


async def _call_is_valid_signature(oracle: ChainOracle, address: str, digest: bytes, signature: bytes) -> bool:
    try:
        result = await oracle.call(address, encode_is_valid_signature_call(digest, signature))
    except ContractLogicError:
        return False
    return _is_magic_value(result)


async def verify_contract_signature(oracle: ChainOracle, address: str, digest: bytes, signature: bytes) -> bool:
    """
    ERC-1271 / ERC-6492 validation against the chain behind ``oracle``.

    Raises:
        TransientError: if the chain node is unreachable
    """
    code = await oracle.get_code(address)

    if is_erc6492_signature(signature):
        try:
            factory, factory_calldata, inner = unwrap_erc6492(signature)
        except ValueError as e:
            logger.info("Rejecting signature for %s: %s", address, e)
            return False

        if code:
            # Already deployed, the wrapper is no longer needed
            return await _call_is_valid_signature(oracle, address, digest, inner)

        deploy, check = await oracle.simulate(
            [
                {"to": factory, "data": factory_calldata},
                {"to": address, "data": encode_is_valid_signature_call(digest, inner)},
            ]
        )
        return deploy.success and check.success and _is_magic_value(check.return_data)

    if not code:
        return False
    return await _call_is_valid_signature(oracle, address, digest, signature)


async def verify_signature(
    address: str,
    message: str,
    signature: bytes,
    chain_id: int,
    resolve_oracle: Callable[[int], ChainOracle],
) -> bool:
    """
    Verify an Ethereum personal_sign signature for ``address``.

    This is the check behind POST /api/siwe/verify. It tries the offline EOA
    recovery first and only asks the chain when that does not match.

    Args:
        address: Claimed signer (any case)
        message: The exact EIP-4361 text that was signed
        signature: Raw signature bytes (65 bytes for EOAs, any length for contracts)
        chain_id: Chain the message names, selects the oracle
        resolve_oracle: chain id -> ChainOracle (may raise SignatureError for unsupported chains)

    Returns:
        True if the signature is valid for the address

    Example:
        ok = await verify_signature(
            address="0xf39F...2266",
            message=siwe.prepare_message(),
            signature=decode_signature("0x..."),
            chain_id=1,
            resolve_oracle=registry.for_chain,
        )
    """
    if len(signature) == EOA_SIGNATURE_LENGTH and not is_erc6492_signature(signature):
        signer = recover_signer(message, signature)
        if signer and signer.lower() == address.lower():
            return True

    oracle = resolve_oracle(chain_id)
    return await verify_contract_signature(oracle, address, hash_personal_message(message), signature)
