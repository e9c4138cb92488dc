"""
Client-side Sign-In with Ethereum flow.

ClientAuthController drives the sign-in against the HTTP API and keeps a
local ClientAuthState that mirrors the server session:

    Loading --check_session--> SignedIn | SignedOut
    SignedOut / Error --sign_in--> SigningIn --> SignedIn | Error
    any --sign_out (confirmed)--> SignedOut

The server is the source of truth. Local state is only reset after the
server confirms a sign-out, and it is reconciled with the wallet after every
operation and on every wallet event:

- signed in, wallet now on a different address     -> sign_out()
- signed in, wallet disconnected after having been
  seen connected since initialize()                 -> sign_out()

There is no polling, no automatic retry and no cancellation of an in-flight
sign-in.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

import httpx

from app.client.api import SiweApiClient, SiweApiError
from app.client.wallet import WalletConnector, WalletSnapshot
from app.core.config import Settings
from app.core.errors import UserRejectedError
from app.core.siwe_message import build_challenge_message
from app.core.verifier import utc_now
from app.services.session_display import session_max_age_ms, session_time_remaining, time_ago

logger = logging.getLogger(__name__)

NOT_CONNECTED = "Please connect your wallet first"
SIGNATURE_REJECTED = "Signature request was rejected"
SIGNING_FAILED = "Failed to sign message"
VERIFICATION_FAILED = "Verification failed"
UNEXPECTED_ERROR = "An unexpected error occurred"
SESSION_CHECK_FAILED = "Failed to check session status"
SIGN_OUT_FAILED = "Failed to sign out"


class AuthStatus(str, Enum):
    LOADING = "loading"
    SIGNED_OUT = "signed_out"
    SIGNING_IN = "signing_in"
    SIGNED_IN = "signed_in"
    ERROR = "error"


@dataclass(frozen=True)
class ClientAuthState:
    status: AuthStatus = AuthStatus.LOADING
    address: Optional[str] = None
    chain_id: Optional[int] = None
    is_loading: bool = True
    error: Optional[str] = None
    siwe_message: Optional[str] = None  # last message sent to the wallet, for display
    signed_in_at: Optional[int] = None

    @property
    def is_signed_in(self) -> bool:
        return self.status == AuthStatus.SIGNED_IN


@dataclass(frozen=True)
class AuthOutcome:
    ok: bool
    address: Optional[str] = None
    error: Optional[str] = None


StateListener = Callable[[ClientAuthState], None]


class ClientAuthController:
    def __init__(
        self,
        api: SiweApiClient,
        wallet: WalletConnector,
        origin: Optional[str] = None,
        statement: str = "Sign in with Ethereum to the app.",
        expiration_minutes: int = 10,
        session_duration_days: int = 7,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._api = api
        self._wallet = wallet
        self._origin = origin or api.base_url
        self._statement = statement
        self._expiration_minutes = expiration_minutes
        self._session_max_age_ms = session_max_age_ms(session_duration_days)
        self._clock = clock

        self._state = ClientAuthState()
        self._listeners: List[StateListener] = []
        self._seen_connected = False
        self._unsubscribe_wallet: Optional[Callable[[], None]] = None
        self._sign_out_task: Optional[asyncio.Future] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        api: SiweApiClient,
        wallet: WalletConnector,
        origin: Optional[str] = None,
    ) -> "ClientAuthController":
        return cls(
            api,
            wallet,
            origin=origin,
            statement=settings.STATEMENT,
            expiration_minutes=settings.MESSAGE_EXPIRATION_MINUTES,
            session_duration_days=settings.SESSION_DURATION_DAYS,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ClientAuthState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` with the new state after every transition. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: ClientAuthState) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def _update(self, **changes) -> None:
        self._set_state(replace(self._state, **changes))

    def _fail(self, message: str) -> AuthOutcome:
        self._update(status=AuthStatus.ERROR, is_loading=False, error=message)
        return AuthOutcome(ok=False, error=message)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def initialize(self) -> ClientAuthState:
        self._update(status=AuthStatus.LOADING, is_loading=True)
        if self._unsubscribe_wallet is None:
            self._unsubscribe_wallet = self._wallet.subscribe(self.handle_wallet_update)
        if self._wallet.snapshot.is_connected:
            self._seen_connected = True
        await self.check_session()
        return self._state

    async def check_session(self) -> ClientAuthState:
        """Re-sync local state with the server session. Safe to call at any time."""
        try:
            data = await self._api.get_session()
        except (httpx.HTTPError, SiweApiError, ValueError) as e:
            logger.warning("Failed to check session: %s", e)
            self._update(
                status=AuthStatus.SIGNED_OUT,
                address=None,
                chain_id=None,
                signed_in_at=None,
                is_loading=False,
                error=SESSION_CHECK_FAILED,
            )
            return self._state

        if data.get("isLoggedIn") and data.get("address"):
            self._update(
                status=AuthStatus.SIGNED_IN,
                address=data["address"],
                chain_id=data.get("chainId"),
                signed_in_at=data.get("signedInAt"),
                is_loading=False,
                error=None,
            )
        else:
            self._update(
                status=AuthStatus.SIGNED_OUT,
                address=None,
                chain_id=None,
                signed_in_at=None,
                is_loading=False,
                error=None,
            )

        await self.handle_wallet_update(self._wallet.snapshot)
        return self._state

    async def sign_in(self) -> AuthOutcome:
        """
        Run the full flow: nonce, message, wallet signature, server verification.

        Only valid from SignedOut or Error. Never raises; failures are returned
        and kept in state.error.
        """
        if self._state.status not in (AuthStatus.SIGNED_OUT, AuthStatus.ERROR):
            return AuthOutcome(ok=False, error=f"Cannot sign in while {self._state.status.value}")

        snapshot = self._wallet.snapshot
        if not snapshot.is_connected or not snapshot.address or not snapshot.chain_id:
            self._update(status=AuthStatus.ERROR, is_loading=False, error=NOT_CONNECTED)
            return AuthOutcome(ok=False, error="Wallet not connected")

        self._update(status=AuthStatus.SIGNING_IN, is_loading=True, error=None)

        try:
            nonce = await self._api.get_nonce()

            message = build_challenge_message(
                address=snapshot.address,
                chain_id=snapshot.chain_id,
                nonce=nonce,
                origin=self._origin,
                statement=self._statement,
                expiration_minutes=self._expiration_minutes,
                now=self._clock(),
            ).prepare_message()
            self._update(siwe_message=message)

            try:
                signature = await self._wallet.sign_message(message)
            except Exception as e:
                rejected = isinstance(e, UserRejectedError) or "rejected" in str(e).lower()
                logger.info("Wallet did not sign: %s", e)
                return self._fail(SIGNATURE_REJECTED if rejected else SIGNING_FAILED)

            ok, data = await self._api.verify(message, signature)
            if not ok:
                return self._fail(data.get("error") or VERIFICATION_FAILED)

            self._update(
                status=AuthStatus.SIGNED_IN,
                address=data["address"],
                chain_id=data["chainId"],
                signed_in_at=data["signedInAt"],
                is_loading=False,
                error=None,
            )
        except Exception as e:
            logger.warning("SIWE sign in error: %s", e)
            return self._fail(str(e) or UNEXPECTED_ERROR)

        outcome = AuthOutcome(ok=True, address=self._state.address)
        await self.handle_wallet_update(self._wallet.snapshot)
        return outcome

    async def sign_out(self) -> AuthOutcome:
        """
        Destroy the server session. Local state is reset only once the server
        confirms; concurrent calls share one request.
        """
        if self._sign_out_task is not None:
            return await self._sign_out_task

        self._sign_out_task = asyncio.ensure_future(self._sign_out())
        try:
            return await self._sign_out_task
        finally:
            self._sign_out_task = None

    async def _sign_out(self) -> AuthOutcome:
        self._update(is_loading=True, error=None)
        try:
            await self._api.destroy_session()
        except Exception as e:
            logger.warning("SIWE sign out error: %s", e)
            self._update(is_loading=False, error=SIGN_OUT_FAILED)
            return AuthOutcome(ok=False, error=SIGN_OUT_FAILED)

        self._set_state(ClientAuthState(status=AuthStatus.SIGNED_OUT, is_loading=False))
        return AuthOutcome(ok=True)

    async def handle_wallet_update(self, snapshot: Optional[WalletSnapshot] = None) -> None:
        """Reconcile the session with the wallet. Wired to wallet events by initialize()."""
        snapshot = snapshot or self._wallet.snapshot
        if snapshot.is_connected:
            self._seen_connected = True

        if self._state.status != AuthStatus.SIGNED_IN:
            return

        if snapshot.is_connected and snapshot.address and self._state.address:
            if snapshot.address.lower() != self._state.address.lower():
                logger.info("Wallet address changed, signing out")
                await self.sign_out()
            return

        if not snapshot.is_connected and self._seen_connected:
            logger.info("Wallet disconnected, signing out")
            await self.sign_out()

    async def close(self) -> None:
        if self._unsubscribe_wallet is not None:
            self._unsubscribe_wallet()
            self._unsubscribe_wallet = None
        await self._api.aclose()

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def session_summary(self, now_ms: Optional[int] = None) -> Optional[str]:
        """e.g. "Signed in 2 min ago (6d 23h 58m left)", None when signed out."""
        if not self._state.is_signed_in or self._state.signed_in_at is None:
            return None
        signed_in_at = self._state.signed_in_at
        remaining = session_time_remaining(signed_in_at, self._session_max_age_ms, now_ms)
        if remaining == "Expired":
            return f"Signed in {time_ago(signed_in_at, now_ms)} (session expired)"
        return f"Signed in {time_ago(signed_in_at, now_ms)} ({remaining} left)"
