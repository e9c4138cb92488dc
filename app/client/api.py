"""
Async HTTP client for the /api/siwe endpoints.

The session lives in the "siwe-session" cookie, so one SiweApiClient must be
reused for a whole sign-in: httpx keeps the cookie in the client's jar
between the nonce request and the verify request.
"""

from typing import Any, Dict, Optional, Tuple

import httpx

SIWE_PREFIX = "/api/siwe"


class SiweApiError(Exception):
    """The server answered a SIWE request with a failure status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class SiweApiClient:
    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    @classmethod
    def from_url(cls, base_url: str, **kwargs) -> "SiweApiClient":
        return cls(httpx.AsyncClient(base_url=base_url, **kwargs))

    @property
    def base_url(self) -> str:
        return str(self._client.base_url).rstrip("/")

    async def get_nonce(self) -> str:
        response = await self._client.get(f"{SIWE_PREFIX}/nonce")
        if response.status_code != httpx.codes.OK:
            raise SiweApiError("Failed to fetch nonce", response.status_code)
        return response.json()["nonce"]

    async def verify(self, message: str, signature: str) -> Tuple[bool, Dict[str, Any]]:
        """
        Submit a signed message.

        Returns:
            (ok, body) where body is the decoded JSON reply. Failure replies
            carry the server's reason under "error".
        """
        response = await self._client.post(
            f"{SIWE_PREFIX}/verify",
            json={"message": message, "signature": signature},
        )
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        return response.is_success and bool(data.get("ok")), data

    async def get_session(self) -> Dict[str, Any]:
        response = await self._client.get(f"{SIWE_PREFIX}/session")
        response.raise_for_status()
        return response.json()

    async def destroy_session(self) -> None:
        response = await self._client.delete(f"{SIWE_PREFIX}/session")
        if not response.is_success:
            raise SiweApiError("Failed to sign out", response.status_code)

    async def aclose(self) -> None:
        await self._client.aclose()
