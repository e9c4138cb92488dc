from typing import Optional

from pydantic import BaseModel, Field

from app.schemas.my_base_model import CustomBaseModel


class NonceResponse(CustomBaseModel):
    """Response model for nonce generation - output"""

    nonce: str = ""


class VerifyRequest(BaseModel):
    """Request model for SIWE verification - documentation only.

    The verify endpoint reads the raw JSON body so that a missing or mistyped
    field is reported with the SIWE error shape instead of FastAPI's 422.
    """

    message: str = Field(..., description="EIP-4361 message exactly as signed")
    signature: str = Field(..., description="0x-prefixed hex signature")


class VerifyResponse(CustomBaseModel):
    """Response model for successful verification - output"""

    ok: bool = True
    address: str
    chain_id: int
    signed_in_at: int


class SessionStatusResponse(CustomBaseModel):
    """Response model for session status - output

    Unauthenticated sessions only carry isLoggedIn=false.
    """

    is_logged_in: bool = False
    address: Optional[str] = None
    chain_id: Optional[int] = None
    signed_in_at: Optional[int] = None


class OkResponse(CustomBaseModel):
    ok: bool = True


class ErrorResponse(CustomBaseModel):
    ok: bool = False
    error: str


class HealthCheck(BaseModel):
    status: str = "ok"
