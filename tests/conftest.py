from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import pytest
from eth_abi import decode as abi_decode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from fastapi import FastAPI
from fastapi.testclient import TestClient
from web3.exceptions import ContractLogicError

from app.core.config import Settings
from app.core.signature import EIP1271_MAGIC_VALUE, IS_VALID_SIGNATURE_SELECTOR
from app.core.siwe_message import SiweMessage
from app.services.chain_oracle import ChainOracle, OracleRegistry, SimulatedCall
from main import create_app

# Hardhat / Anvil account #0
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
# Hardhat / Anvil account #1
OTHER_PRIVATE_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
TEST_SESSION_SECRET = "test_session_secret_that_is_at_least_32_chars"
TEST_DOMAIN = "testserver"


class FakeChainOracle(ChainOracle):
    """In-memory chain: contract code, accepted ERC-1271 signatures and known factories."""

    def __init__(self, chain_id: int = 1):
        self.chain_id = chain_id
        self.codes: Dict[str, bytes] = {}
        self.accepted: Set[Tuple[str, bytes, bytes]] = set()
        # factory address -> account address it deploys
        self.factories: Dict[str, str] = {}
        self.calls: List[Tuple[str, bytes]] = []
        self.simulations: List[Sequence[dict]] = []
        self.error: Optional[Exception] = None
        self.closed = False

    def deploy(self, address: str, code: bytes = b"\x60\x80") -> None:
        self.codes[address.lower()] = code

    def accept(self, address: str, digest: bytes, signature: bytes) -> None:
        self.accepted.add((address.lower(), bytes(digest), bytes(signature)))

    def _is_valid_signature(self, to: str, data: bytes) -> bytes:
        if data[:4] != IS_VALID_SIGNATURE_SELECTOR:
            raise ContractLogicError("execution reverted")
        digest, signature = abi_decode(["bytes32", "bytes"], data[4:])
        if (to.lower(), bytes(digest), bytes(signature)) in self.accepted:
            return EIP1271_MAGIC_VALUE + bytes(28)
        return bytes(32)

    async def get_code(self, address: str) -> bytes:
        if self.error:
            raise self.error
        return self.codes.get(address.lower(), b"")

    async def call(self, to: str, data: bytes) -> bytes:
        if self.error:
            raise self.error
        self.calls.append((to, data))
        if not self.codes.get(to.lower()):
            return b""
        return self._is_valid_signature(to, data)

    async def simulate(self, calls: Sequence[dict]) -> List[SimulatedCall]:
        if self.error:
            raise self.error
        self.simulations.append(calls)
        deployed = set(self.codes)
        results = []
        for call in calls:
            to = call["to"].lower()
            if to in self.factories:
                deployed.add(self.factories[to].lower())
                results.append(SimulatedCall(success=True, return_data=b""))
            elif to in deployed:
                try:
                    results.append(SimulatedCall(success=True, return_data=self._is_valid_signature(to, call["data"])))
                except ContractLogicError:
                    results.append(SimulatedCall(success=False, return_data=b""))
            else:
                results.append(SimulatedCall(success=True, return_data=b""))
        return results

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> Settings:
    """Test settings, never read from the environment file"""
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        SESSION_SECRET_KEY=TEST_SESSION_SECRET,
    )


@pytest.fixture
def fake_oracle() -> FakeChainOracle:
    return FakeChainOracle(chain_id=1)


@pytest.fixture
def oracle_registry(settings: Settings, fake_oracle: FakeChainOracle) -> OracleRegistry:
    """Registry that hands out the same fake oracle for every chain"""

    def factory(chain_id: int, rpc_url: str, timeout: float) -> ChainOracle:
        return fake_oracle

    return OracleRegistry(settings, factory=factory)


@pytest.fixture
def app(settings: Settings, oracle_registry: OracleRegistry) -> FastAPI:
    return create_app(settings, oracles=oracle_registry)


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Create a test client for the FastAPI application"""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def account() -> LocalAccount:
    return Account.from_key(TEST_PRIVATE_KEY)


@pytest.fixture
def other_account() -> LocalAccount:
    return Account.from_key(OTHER_PRIVATE_KEY)


def sign_text(account: LocalAccount, text: str) -> str:
    signed = account.sign_message(encode_defunct(text=text))
    return "0x" + bytes(signed.signature).hex()


@pytest.fixture
def build_message() -> Callable[..., str]:
    """Factory for EIP-4361 message text, valid for ten minutes by default"""

    def _build(address: str, nonce: str, **overrides) -> str:
        now = datetime.now(timezone.utc)
        fields = dict(
            domain=TEST_DOMAIN,
            address=address,
            uri=f"http://{TEST_DOMAIN}",
            version="1",
            chain_id=1,
            nonce=nonce,
            issued_at=now,
            expiration_time=now + timedelta(minutes=10),
            statement="Sign in with Ethereum to the app.",
        )
        fields.update(overrides)
        return SiweMessage(**fields).prepare_message()

    return _build


@pytest.fixture
def sign_in(client: TestClient, account: LocalAccount, build_message):
    """Full sign-in through the API: nonce, message, signature, verify"""

    def _sign_in(signer: LocalAccount = account, **overrides):
        nonce = client.get("/api/siwe/nonce").json()["nonce"]
        message = build_message(signer.address, nonce, **overrides)
        signature = sign_text(signer, message)
        response = client.post("/api/siwe/verify", json={"message": message, "signature": signature})
        return response, message, signature

    return _sign_in


@pytest.fixture
def sign_message() -> Callable[[LocalAccount, str], str]:
    """personal_sign helper returning 0x hex"""
    return sign_text


@pytest.fixture
def private_key() -> str:
    return TEST_PRIVATE_KEY


@pytest.fixture
def other_private_key() -> str:
    return OTHER_PRIVATE_KEY
