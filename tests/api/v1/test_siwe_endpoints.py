import re
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from app.core.errors import TransientError
from app.core.nonce import NonceIssuer
from app.core.signature import hash_personal_message


class TestNonceAPI:
    """Test cases for GET /api/siwe/nonce"""

    def test_get_nonce_success(self, client: TestClient):
        """Nonce is 64 hex characters"""
        response = client.get("/api/siwe/nonce")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert re.fullmatch(r"[0-9a-f]{64}", data["nonce"])

    def test_get_nonce_sets_session_cookie(self, client: TestClient):
        """Session cookie attributes"""
        response = client.get("/api/siwe/nonce")

        cookie = response.headers["set-cookie"]
        assert cookie.startswith("siwe-session=")
        assert "HttpOnly" in cookie
        assert "Path=/" in cookie
        assert "Max-Age=604800" in cookie
        assert "samesite=lax" in cookie.lower()
        assert "Secure" not in cookie

    def test_get_nonce_is_fresh_each_time(self, client: TestClient):
        """Every call issues a new nonce"""
        first = client.get("/api/siwe/nonce").json()["nonce"]
        second = client.get("/api/siwe/nonce").json()["nonce"]

        assert first != second

    def test_get_nonce_storage_failure(self, app, client: TestClient):
        """Nonce generation failures return a generic error"""

        def broken_factory() -> str:
            raise RuntimeError("no entropy")

        app.state.nonce_issuer = NonceIssuer(broken_factory)
        response = client.get("/api/siwe/nonce")

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {"error": "Failed to generate nonce"}

    def test_get_nonce_logs_out_existing_session(self, client: TestClient, sign_in):
        """A new challenge ends the previous login"""
        response, _, _ = sign_in()
        assert response.status_code == status.HTTP_200_OK

        client.get("/api/siwe/nonce")

        assert client.get("/api/siwe/session").json() == {"isLoggedIn": False}


class TestVerifyAPI:
    """Test cases for POST /api/siwe/verify"""

    def test_verify_success(self, client: TestClient, account, sign_in):
        """Round trip: nonce, sign, verify, session"""
        response, _, _ = sign_in()

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["ok"] is True
        assert data["address"] == account.address
        assert data["chainId"] == 1
        now_ms = datetime.now(timezone.utc).timestamp() * 1000
        assert abs(data["signedInAt"] - now_ms) < 60_000

        session = client.get("/api/siwe/session").json()
        assert session == {
            "isLoggedIn": True,
            "address": account.address,
            "chainId": 1,
            "signedInAt": data["signedInAt"],
        }

    def test_verify_lowercase_address_is_checksummed(self, client: TestClient, account, build_message, sign_message):
        """The session stores the EIP-55 form of the address"""
        nonce = client.get("/api/siwe/nonce").json()["nonce"]
        message = build_message(account.address.lower(), nonce)

        response = client.post(
            "/api/siwe/verify",
            json={"message": message, "signature": sign_message(account, message)},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["address"] == account.address

    def test_verify_fixed_nonce_scenario(self, app, client: TestClient, account, build_message, sign_message):
        """nonce "n1", chain 1, ten minute window"""
        app.state.nonce_issuer = NonceIssuer(lambda: "n1")
        assert client.get("/api/siwe/nonce").json() == {"nonce": "n1"}

        message = build_message(account.address, "n1")
        signature = sign_message(account, message)
        response = client.post("/api/siwe/verify", json={"message": message, "signature": signature})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["ok"] is True
        assert response.json()["address"] == account.address
        assert response.json()["chainId"] == 1

        replay = client.post("/api/siwe/verify", json={"message": message, "signature": signature})
        assert replay.status_code == status.HTTP_400_BAD_REQUEST
        assert replay.json() == {
            "ok": False,
            "error": "Nonce mismatch. Please request a new nonce and try again.",
        }

    def test_verify_replay_after_new_nonce(self, client: TestClient, sign_in):
        """A consumed message stays rejected once a new challenge is pending"""
        response, message, signature = sign_in()
        assert response.status_code == status.HTTP_200_OK

        client.get("/api/siwe/nonce")
        replay = client.post("/api/siwe/verify", json={"message": message, "signature": signature})

        assert replay.status_code == status.HTTP_400_BAD_REQUEST
        assert replay.json()["error"] == "Nonce mismatch. Please request a new nonce and try again."

    def test_verify_superseded_nonce(self, client: TestClient, account, build_message, sign_message):
        """Issuing a new nonce invalidates the previous one"""
        old_nonce = client.get("/api/siwe/nonce").json()["nonce"]
        client.get("/api/siwe/nonce")

        message = build_message(account.address, old_nonce)
        response = client.post(
            "/api/siwe/verify",
            json={"message": message, "signature": sign_message(account, message)},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Nonce mismatch. Please request a new nonce and try again."

    def test_verify_without_nonce(self, client: TestClient, account, build_message, sign_message):
        """Verify before any challenge was issued"""
        message = build_message(account.address, "abcdef123456")
        response = client.post(
            "/api/siwe/verify",
            json={"message": message, "signature": sign_message(account, message)},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {
            "ok": False,
            "error": "No nonce found in session. Please call GET /api/siwe/nonce first.",
        }

    def test_verify_expired_message(self, sign_in):
        """Expired messages are rejected even with a valid signature"""
        now = datetime.now(timezone.utc)
        response, _, _ = sign_in(
            issued_at=now - timedelta(minutes=20),
            expiration_time=now - timedelta(minutes=10),
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Message has expired. Please sign a new message."

    def test_verify_not_yet_valid_message(self, sign_in):
        now = datetime.now(timezone.utc)
        response, _, _ = sign_in(not_before=now + timedelta(minutes=5))

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Message is not yet valid. Please wait and try again."

    def test_verify_domain_mismatch(self, sign_in):
        """Domain binding wins over every other check"""
        now = datetime.now(timezone.utc)
        response, _, _ = sign_in(
            domain="evil.example",
            issued_at=now - timedelta(minutes=20),
            expiration_time=now - timedelta(minutes=10),
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Domain mismatch. Expected: testserver, Got: evil.example"

    def test_verify_signature_from_other_account(self, client: TestClient, account, other_account, build_message, sign_message):
        """Message claims one address but another key signed it"""
        nonce = client.get("/api/siwe/nonce").json()["nonce"]
        message = build_message(account.address, nonce)

        response = client.post(
            "/api/siwe/verify",
            json={"message": message, "signature": sign_message(other_account, message)},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Invalid signature. The message was not signed by the claimed address."

    def test_verify_failure_keeps_nonce(self, client: TestClient, account, other_account, build_message, sign_message):
        """A failed attempt can be retried with the same nonce"""
        nonce = client.get("/api/siwe/nonce").json()["nonce"]
        message = build_message(account.address, nonce)

        bad = client.post(
            "/api/siwe/verify",
            json={"message": message, "signature": sign_message(other_account, message)},
        )
        assert bad.status_code == status.HTTP_400_BAD_REQUEST
        assert client.get("/api/siwe/session").json() == {"isLoggedIn": False}

        good = client.post(
            "/api/siwe/verify",
            json={"message": message, "signature": sign_message(account, message)},
        )
        assert good.status_code == status.HTTP_200_OK

    @pytest.mark.parametrize(
        "body, error",
        [
            ({}, "Missing or invalid 'message' field. Expected a string."),
            ({"message": 42, "signature": "0x00"}, "Missing or invalid 'message' field. Expected a string."),
            ({"message": "hello"}, "Missing or invalid 'signature' field. Expected a hex string."),
            ({"message": "hello", "signature": "not-hex"}, "Missing or invalid 'signature' field. Expected a hex string."),
            ({"message": "hello", "signature": "0xabc"}, "Missing or invalid 'signature' field. Expected a hex string."),
        ],
    )
    def test_verify_invalid_body(self, client: TestClient, body, error):
        client.get("/api/siwe/nonce")
        response = client.post("/api/siwe/verify", json=body)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"ok": False, "error": error}

    def test_verify_non_json_body(self, client: TestClient):
        response = client.post("/api/siwe/verify", content=b"not json", headers={"content-type": "application/json"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Missing or invalid 'message' field. Expected a string."

    def test_verify_unparseable_message(self, client: TestClient):
        client.get("/api/siwe/nonce")
        response = client.post("/api/siwe/verify", json={"message": "hello world", "signature": "0x" + "00" * 65})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Invalid SIWE message format. Could not parse EIP-4361 message."

    def test_verify_message_missing_chain_id(self, client: TestClient, account, build_message, sign_message):
        nonce = client.get("/api/siwe/nonce").json()["nonce"]
        message = build_message(account.address, nonce).replace("Chain ID: 1\n", "")

        response = client.post(
            "/api/siwe/verify",
            json={"message": message, "signature": sign_message(account, message)},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Message is missing required field: chainId"

    def test_verify_contract_account(self, client: TestClient, fake_oracle, build_message):
        """ERC-1271 account deployed on chain"""
        wallet = "0x1111111111111111111111111111111111111111"
        fake_oracle.deploy(wallet)
        nonce = client.get("/api/siwe/nonce").json()["nonce"]
        message = build_message(wallet, nonce)
        signature = b"\x42" * 96
        fake_oracle.accept(wallet, hash_personal_message(message), signature)

        response = client.post("/api/siwe/verify", json={"message": message, "signature": "0x" + signature.hex()})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["address"] == wallet

    def test_verify_unreachable_chain_node(self, client: TestClient, fake_oracle, build_message):
        fake_oracle.error = TransientError("Could not reach the blockchain node. Please try again.")
        nonce = client.get("/api/siwe/nonce").json()["nonce"]
        message = build_message("0x1111111111111111111111111111111111111111", nonce)

        response = client.post("/api/siwe/verify", json={"message": message, "signature": "0x" + "42" * 96})

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["ok"] is False

    def test_verify_unexpected_error(self, client: TestClient, fake_oracle, build_message):
        """Internal failures are logged and answered generically"""
        fake_oracle.error = KeyError("boom")
        nonce = client.get("/api/siwe/nonce").json()["nonce"]
        message = build_message("0x1111111111111111111111111111111111111111", nonce)

        response = client.post("/api/siwe/verify", json={"message": message, "signature": "0x" + "42" * 96})

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {
            "ok": False,
            "error": "An unexpected error occurred during verification. Please try again.",
        }


class TestSessionAPI:
    """Test cases for GET/DELETE /api/siwe/session"""

    def test_get_session_default(self, client: TestClient):
        response = client.get("/api/siwe/session")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"isLoggedIn": False}

    def test_get_session_with_pending_nonce(self, client: TestClient):
        client.get("/api/siwe/nonce")

        assert client.get("/api/siwe/session").json() == {"isLoggedIn": False}

    def test_get_session_tampered_cookie(self, client: TestClient, sign_in):
        """Unreadable cookies fall back to the default session"""
        sign_in()
        client.cookies.clear()
        client.cookies.set("siwe-session", "garbage")

        assert client.get("/api/siwe/session").json() == {"isLoggedIn": False}

    def test_destroy_session(self, client: TestClient, account, sign_in):
        """After logout the session is default and the old nonce is gone"""
        response, message, signature = sign_in()
        assert response.status_code == status.HTTP_200_OK

        logout = client.delete("/api/siwe/session")
        assert logout.status_code == status.HTTP_200_OK
        assert logout.json() == {"ok": True}

        assert client.get("/api/siwe/session").json() == {"isLoggedIn": False}

        retry = client.post("/api/siwe/verify", json={"message": message, "signature": signature})
        assert retry.status_code == status.HTTP_400_BAD_REQUEST
        assert retry.json()["error"] == "No nonce found in session. Please call GET /api/siwe/nonce first."

    def test_destroy_pending_challenge(self, client: TestClient, account, build_message, sign_message):
        """A nonce issued before logout cannot be used afterwards"""
        nonce = client.get("/api/siwe/nonce").json()["nonce"]
        client.delete("/api/siwe/session")

        message = build_message(account.address, nonce)
        response = client.post(
            "/api/siwe/verify",
            json={"message": message, "signature": sign_message(account, message)},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "No nonce found in session. Please call GET /api/siwe/nonce first."

    def test_destroy_session_expires_cookie(self, client: TestClient, sign_in):
        sign_in()
        response = client.delete("/api/siwe/session")

        cookie = response.headers["set-cookie"]
        assert cookie.startswith("siwe-session=")
        assert "Max-Age=0" in cookie
