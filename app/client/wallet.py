"""
Wallet connectors: the signing side of the sign-in flow.

A connector reports whether a wallet is connected, which address and chain
it is on, and signs EIP-191 personal messages. Connection changes are pushed
to subscribers, which is how ClientAuthController notices an account switch
or a disconnect without polling.

LocalAccountWallet holds an eth_account key in memory. It stands in for a
browser wallet in scripts and tests.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from app.core.errors import UserRejectedError

logger = logging.getLogger(__name__)

WalletListener = Callable[["WalletSnapshot"], Awaitable[None]]


@dataclass(frozen=True)
class WalletSnapshot:
    """Connection state of a wallet at one point in time."""

    is_connected: bool = False
    address: Optional[str] = None
    chain_id: Optional[int] = None


class WalletConnector(ABC):
    """Abstract signing capability."""

    def __init__(self):
        self._listeners: List[WalletListener] = []

    @property
    @abstractmethod
    def snapshot(self) -> WalletSnapshot:
        ...

    @abstractmethod
    async def sign_message(self, message: str) -> str:
        """
        personal_sign ``message`` with the connected account.

        Returns:
            0x-prefixed hex signature

        Raises:
            UserRejectedError: the user declined the request
        """
        ...

    def subscribe(self, listener: WalletListener) -> Callable[[], None]:
        """Register ``listener`` for connection changes. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self) -> None:
        snapshot = self.snapshot
        for listener in list(self._listeners):
            await listener(snapshot)


class LocalAccountWallet(WalletConnector):
    def __init__(
        self,
        private_key: Optional[str] = None,
        chain_id: int = 1,
        connected: bool = True,
    ):
        super().__init__()
        self._account: LocalAccount = Account.from_key(private_key) if private_key else Account.create()
        self._chain_id = chain_id
        self._connected = connected
        self.reject_signatures = False

    @property
    def account(self) -> LocalAccount:
        return self._account

    @property
    def snapshot(self) -> WalletSnapshot:
        if not self._connected:
            return WalletSnapshot()
        return WalletSnapshot(is_connected=True, address=self._account.address, chain_id=self._chain_id)

    async def connect(self) -> WalletSnapshot:
        self._connected = True
        await self._emit()
        return self.snapshot

    async def disconnect(self) -> None:
        self._connected = False
        await self._emit()

    async def switch_account(self, private_key: Optional[str] = None) -> str:
        """Switch to another key (a fresh random one by default), like accountsChanged."""
        self._account = Account.from_key(private_key) if private_key else Account.create()
        await self._emit()
        return self._account.address

    async def switch_chain(self, chain_id: int) -> None:
        self._chain_id = chain_id
        await self._emit()

    async def sign_message(self, message: str) -> str:
        if not self._connected:
            raise RuntimeError("Wallet is not connected")
        if self.reject_signatures:
            raise UserRejectedError("User rejected the request.")
        signed = self._account.sign_message(encode_defunct(text=message))
        logger.debug("Signed message with %s", self._account.address)
        return "0x" + bytes(signed.signature).hex()
