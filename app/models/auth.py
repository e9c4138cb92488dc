from typing import Optional

from pydantic import ConfigDict, model_validator

from app.schemas.my_base_model import CustomBaseModel


class SessionData(CustomBaseModel):
    """Authentication state held inside the encrypted session cookie.

    address, chain_id and signed_in_at are set if and only if is_logged_in is
    true. The record is immutable; every change goes through ``with_changes``
    so a new record is validated as a whole before it replaces the old one.
    Example (logged in):
    {
        "address": "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
        "chainId": 1,
        "isLoggedIn": true,
        "signedInAt": 1704067200000
    }
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    address: Optional[str] = None
    chain_id: Optional[int] = None
    nonce: Optional[str] = None
    is_logged_in: bool = False
    signed_in_at: Optional[int] = None  # unix epoch, milliseconds

    @model_validator(mode="after")
    def identity_follows_login(self) -> "SessionData":
        identity = (self.address, self.chain_id, self.signed_in_at)
        if self.is_logged_in and any(v is None for v in identity):
            raise ValueError("a logged in session needs address, chain_id and signed_in_at")
        if not self.is_logged_in and any(v is not None for v in identity):
            raise ValueError("address, chain_id and signed_in_at are only set on logged in sessions")
        return self

    @property
    def is_authenticated(self) -> bool:
        return self.is_logged_in and bool(self.address) and bool(self.chain_id)

    @property
    def has_pending_nonce(self) -> bool:
        return bool(self.nonce)

    def with_changes(self, **fields) -> "SessionData":
        return SessionData.model_validate({**self.model_dump(), **fields})

