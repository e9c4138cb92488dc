"""
Read-only chain access for smart-contract account signatures.

Plain key holders are verified offline. Accounts controlled by a contract
(ERC-1271), including ones not deployed yet (ERC-6492), need a node of the
chain named in the message. ChainOracle is that node as the verifier sees it:
read code, make a read-only call, simulate a short call sequence.

OracleRegistry hands out one cached oracle per chain id.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, Web3Exception

from app.core.config import Settings
from app.core.errors import SignatureError, TransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Chain:
    id: int
    name: str
    rpc_url: str


SUPPORTED_CHAINS: Dict[int, Chain] = {
    chain.id: chain
    for chain in (
        Chain(1, "Ethereum", "https://eth.merkle.io"),
        Chain(10, "OP Mainnet", "https://mainnet.optimism.io"),
        Chain(100, "Gnosis", "https://rpc.gnosischain.com"),
        Chain(137, "Polygon", "https://polygon-rpc.com"),
        Chain(324, "zkSync Era", "https://mainnet.era.zksync.io"),
        Chain(8453, "Base", "https://mainnet.base.org"),
        Chain(42161, "Arbitrum One", "https://arb1.arbitrum.io/rpc"),
        Chain(534352, "Scroll", "https://rpc.scroll.io"),
        Chain(11155111, "Sepolia", "https://rpc.sepolia.org"),
        Chain(31337, "Hardhat", "http://127.0.0.1:8545"),
    )
}


@dataclass(frozen=True)
class SimulatedCall:
    success: bool
    return_data: bytes


class ChainOracle(ABC):
    """
    Read-only view of one chain.

    Implementations raise TransientError when the node cannot be reached and
    web3's ContractLogicError when a call reverts.
    """

    chain_id: int

    @abstractmethod
    async def get_code(self, address: str) -> bytes:
        ...

    @abstractmethod
    async def call(self, to: str, data: bytes) -> bytes:
        ...

    @abstractmethod
    async def simulate(self, calls: Sequence[dict]) -> List[SimulatedCall]:
        """Run ``calls`` ({"to", "data"}) in order on top of the latest block without persisting anything."""
        ...

    async def aclose(self) -> None:
        """Release connections held by the oracle."""


class Web3ChainOracle(ChainOracle):
    def __init__(self, chain_id: int, w3: AsyncWeb3, timeout: float = 10.0):
        self.chain_id = chain_id
        self._w3 = w3
        self._timeout = timeout

    @classmethod
    def from_url(cls, chain_id: int, rpc_url: str, timeout: float = 10.0) -> "Web3ChainOracle":
        return cls(chain_id, AsyncWeb3(AsyncHTTPProvider(rpc_url)), timeout)

    async def _request(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except ContractLogicError:
            raise
        except (OSError, asyncio.TimeoutError, aiohttp.ClientError, Web3Exception) as e:
            logger.warning("Chain %s node unavailable: %s", self.chain_id, e)
            raise TransientError("Could not reach the blockchain node. Please try again.")

    async def get_code(self, address: str) -> bytes:
        code = await self._request(self._w3.eth.get_code(AsyncWeb3.to_checksum_address(address)))
        return bytes(code)

    async def call(self, to: str, data: bytes) -> bytes:
        tx = {"to": AsyncWeb3.to_checksum_address(to), "data": AsyncWeb3.to_hex(data)}
        result = await self._request(self._w3.eth.call(tx))
        return bytes(result)

    async def simulate(self, calls: Sequence[dict]) -> List[SimulatedCall]:
        payload = {
            "blockStateCalls": [
                {
                    "calls": [
                        {"to": AsyncWeb3.to_checksum_address(c["to"]), "data": AsyncWeb3.to_hex(c["data"])}
                        for c in calls
                    ]
                }
            ]
        }
        response = await self._request(self._w3.provider.make_request("eth_simulateV1", [payload, "latest"]))
        if response.get("error"):
            logger.warning("Chain %s rejected eth_simulateV1: %s", self.chain_id, response["error"])
            raise TransientError("The blockchain node could not simulate the account deployment.")

        results = response["result"][0]["calls"]
        return [
            SimulatedCall(
                success=int(r.get("status", "0x0"), 16) == 1,
                return_data=bytes(AsyncWeb3.to_bytes(hexstr=r.get("returnData") or "0x")),
            )
            for r in results
        ]

    async def aclose(self) -> None:
        await self._w3.provider.disconnect()


OracleFactory = Callable[[int, str, float], ChainOracle]


class OracleRegistry:
    """
    Chain id -> ChainOracle, built lazily and cached.

    Unknown chains fall back to DEFAULT_CHAIN_ID with a warning, or fail with
    SignatureError when STRICT_CHAIN_ORACLE is set.
    """

    def __init__(self, settings: Settings, factory: Optional[OracleFactory] = None):
        self._rpc_urls = {chain_id: chain.rpc_url for chain_id, chain in SUPPORTED_CHAINS.items()}
        self._rpc_urls.update(settings.RPC_URLS)
        self._default_chain_id = settings.DEFAULT_CHAIN_ID
        self._strict = settings.STRICT_CHAIN_ORACLE
        self._timeout = settings.RPC_TIMEOUT_SECONDS
        self._factory = factory or Web3ChainOracle.from_url
        self._oracles: Dict[int, ChainOracle] = {}

    def is_supported(self, chain_id: int) -> bool:
        return chain_id in self._rpc_urls

    def for_chain(self, chain_id: int) -> ChainOracle:
        if not self.is_supported(chain_id):
            if self._strict:
                raise SignatureError(f"Unsupported chain ID: {chain_id}")
            logger.warning(
                "No RPC configured for chain %s, falling back to chain %s",
                chain_id,
                self._default_chain_id,
            )
            chain_id = self._default_chain_id
            if not self.is_supported(chain_id):
                raise SignatureError(f"Unsupported chain ID: {chain_id}")

        oracle = self._oracles.get(chain_id)
        if oracle is None:
            oracle = self._factory(chain_id, self._rpc_urls[chain_id], self._timeout)
            self._oracles[chain_id] = oracle
        return oracle

    def __call__(self, chain_id: int) -> ChainOracle:
        return self.for_chain(chain_id)

    async def aclose(self) -> None:
        """Close every cached oracle. Later lookups build fresh ones."""
        oracles = list(self._oracles.values())
        self._oracles.clear()
        for oracle in oracles:
            try:
                await oracle.aclose()
            except Exception as e:
                logger.warning("Failed to close oracle for chain %s: %s", oracle.chain_id, e)
