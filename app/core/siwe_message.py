"""
EIP-4361 (Sign-In with Ethereum) messages.

A SIWE message is the human-readable text the wallet shows and signs:

    example.com wants you to sign in with your Ethereum account:
    0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266

    Sign in with Ethereum to the app.

    URI: https://example.com
    Version: 1
    Chain ID: 1
    Nonce: 3f1c0a...
    Issued At: 2024-01-01T00:00:00.000Z
    Expiration Time: 2024-01-01T00:10:00.000Z

SiweMessage is the typed form of that text. Fields that EIP-4361 makes optional
are Optional here; required fields may still be None after parsing a broken
message, which is what validate_required_fields() reports.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from urllib.parse import urlparse

from app.core.errors import ProtocolError, ValidationError

logger = logging.getLogger(__name__)

SIWE_VERSION = "1"

PARSE_ERROR = "Invalid SIWE message format. Could not parse EIP-4361 message."

HEADER_SUFFIX = " wants you to sign in with your Ethereum account:"

_HEADER_RE = re.compile(
    r"^(?:(?P<scheme>[a-zA-Z][a-zA-Z0-9+\-.]*)://)?(?P<domain>[^\s/?#]+)"
    + re.escape(HEADER_SUFFIX)
    + r"$"
)
_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_NONCE_RE = re.compile(r"^[a-zA-Z0-9]+$")
_FRACTION_RE = re.compile(r"\.(\d+)")

# Tag -> attribute, in the order EIP-4361 lays them out
_FIELD_TAGS = {
    "URI": "uri",
    "Version": "version",
    "Chain ID": "chain_id",
    "Nonce": "nonce",
    "Issued At": "issued_at",
    "Expiration Time": "expiration_time",
    "Not Before": "not_before",
    "Request ID": "request_id",
}
_TIMESTAMP_FIELDS = ("issued_at", "expiration_time", "not_before")

REQUIRED_FIELDS = ("domain", "address", "uri", "version", "chain_id", "nonce", "issued_at")


def format_timestamp(value: datetime) -> str:
    """RFC 3339, UTC, millisecond precision: 2024-01-01T00:00:00.000Z"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp. Naive values are taken as UTC."""
    value = value.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    # fromisoformat takes 3 or 6 fractional digits only before Python 3.11
    value = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], value, count=1)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class SiweMessage:
    domain: Optional[str]
    address: Optional[str]
    uri: Optional[str]
    version: Optional[str]
    chain_id: Optional[int]
    nonce: Optional[str]
    issued_at: Optional[datetime]
    statement: Optional[str] = None
    scheme: Optional[str] = None
    expiration_time: Optional[datetime] = None
    not_before: Optional[datetime] = None
    request_id: Optional[str] = None
    resources: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.expiration_time and self.issued_at and self.expiration_time <= self.issued_at:
            raise ValueError("expiration_time must be after issued_at")
        if self.statement is not None and "\n" in self.statement:
            raise ValueError("statement must be a single line")

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FIELDS if getattr(self, name) in (None, "")]

    def validate_required_fields(self) -> None:
        """
        Check required fields before any security check runs.

        Raises:
            ProtocolError: naming the first missing field, or an unsupported version
        """
        missing = self.missing_fields()
        if missing:
            raise ProtocolError(f"Message is missing required field: {_wire_name(missing[0])}")
        if self.version != SIWE_VERSION:
            raise ProtocolError(f"Unsupported message version: {self.version}. Expected: {SIWE_VERSION}")

    def is_expired(self, now: datetime) -> bool:
        return self.expiration_time is not None and now >= self.expiration_time

    def is_not_yet_valid(self, now: datetime) -> bool:
        return self.not_before is not None and now < self.not_before

    def is_valid_at(self, now: datetime) -> bool:
        return not self.is_expired(now) and not self.is_not_yet_valid(now)

    # ------------------------------------------------------------------
    # Text form
    # ------------------------------------------------------------------

    def prepare_message(self) -> str:
        """Render the EIP-4361 text that the wallet signs."""
        missing = self.missing_fields()
        if missing:
            raise ValueError(f"cannot render a message without {', '.join(missing)}")

        origin = f"{self.scheme}://{self.domain}" if self.scheme else self.domain
        prefix = f"{origin}{HEADER_SUFFIX}\n{self.address}"
        if self.statement:
            prefix = f"{prefix}\n\n{self.statement}"

        lines = [
            f"URI: {self.uri}",
            f"Version: {self.version}",
            f"Chain ID: {self.chain_id}",
            f"Nonce: {self.nonce}",
            f"Issued At: {format_timestamp(self.issued_at)}",
        ]
        if self.expiration_time:
            lines.append(f"Expiration Time: {format_timestamp(self.expiration_time)}")
        if self.not_before:
            lines.append(f"Not Before: {format_timestamp(self.not_before)}")
        if self.request_id is not None:
            lines.append(f"Request ID: {self.request_id}")
        if self.resources:
            lines.append("Resources:")
            lines.extend(f"- {resource}" for resource in self.resources)

        return prefix + "\n\n" + "\n".join(lines)

    def __str__(self) -> str:
        return self.prepare_message()

    @classmethod
    def parse(cls, message: str) -> "SiweMessage":
        """
        Parse EIP-4361 text.

        Structural problems (bad header, unknown lines, unreadable values) raise
        ValidationError. Required fields that are simply absent come back as None
        so validate_required_fields() can name them.
        """
        try:
            return cls._parse(message)
        except (ValueError, IndexError) as e:
            logger.debug("Unparseable SIWE message: %s", e)
            raise ValidationError(PARSE_ERROR)

    @classmethod
    def _parse(cls, message: str) -> "SiweMessage":
        lines = message.replace("\r\n", "\n").split("\n")

        header = _HEADER_RE.match(lines[0])
        if not header:
            raise ValueError("missing EIP-4361 header line")

        address = lines[1].strip() if len(lines) > 1 else ""
        if address and not _ADDRESS_RE.match(address):
            raise ValueError(f"invalid address: {address}")

        # address LF LF [statement LF] LF
        index = 2
        if index < len(lines) and lines[index] == "":
            index += 1
        statement = None
        if index < len(lines) and lines[index] and not _is_tagged(lines[index]):
            statement = lines[index]
            index += 1
        while index < len(lines) and lines[index] == "":
            index += 1

        values: dict = {}
        resources: List[str] = []
        while index < len(lines):
            line = lines[index]
            index += 1
            if not line:
                continue
            if line == "Resources:":
                while index < len(lines) and lines[index].startswith("- "):
                    resources.append(lines[index][2:].strip())
                    index += 1
                continue
            tag, sep, value = line.partition(": ")
            if not sep or tag not in _FIELD_TAGS:
                raise ValueError(f"unexpected line: {line}")
            name = _FIELD_TAGS[tag]
            if name in values:
                raise ValueError(f"duplicate field: {tag}")
            values[name] = value.strip()

        if "chain_id" in values:
            values["chain_id"] = int(values["chain_id"])
        for name in _TIMESTAMP_FIELDS:
            if name in values:
                values[name] = parse_timestamp(values[name])
        if "nonce" in values and not _NONCE_RE.match(values["nonce"]):
            raise ValueError("nonce must be alphanumeric")

        return cls(
            domain=header.group("domain"),
            scheme=header.group("scheme"),
            address=address or None,
            statement=statement,
            uri=values.get("uri"),
            version=values.get("version"),
            chain_id=values.get("chain_id"),
            nonce=values.get("nonce"),
            issued_at=values.get("issued_at"),
            expiration_time=values.get("expiration_time"),
            not_before=values.get("not_before"),
            request_id=values.get("request_id"),
            resources=resources,
        )


def _is_tagged(line: str) -> bool:
    tag, sep, _ = line.partition(": ")
    return (bool(sep) and tag in _FIELD_TAGS) or line == "Resources:"


def _wire_name(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def message_options_for_origin(origin: str, statement: str) -> dict:
    """Domain, uri, version and statement for messages created on ``origin``.

    domain is the host including the port (what browsers call location.host),
    uri is the full origin.
    """
    parsed = urlparse(origin)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"origin must be an absolute URL, got: {origin!r}")
    return {
        "domain": parsed.netloc,
        "uri": f"{parsed.scheme}://{parsed.netloc}",
        "version": SIWE_VERSION,
        "statement": statement or None,
    }


def build_challenge_message(
    *,
    address: str,
    chain_id: int,
    nonce: str,
    origin: str,
    statement: str,
    expiration_minutes: int,
    now: datetime,
) -> SiweMessage:
    """Challenge message for ``address`` bound to ``origin``, valid for ``expiration_minutes``."""
    return SiweMessage(
        address=address,
        chain_id=chain_id,
        nonce=nonce,
        issued_at=now,
        expiration_time=now + timedelta(minutes=expiration_minutes),
        **message_options_for_origin(origin, statement),
    )


__all__ = [
    "REQUIRED_FIELDS",
    "SIWE_VERSION",
    "SiweMessage",
    "build_challenge_message",
    "format_timestamp",
    "message_options_for_origin",
    "parse_timestamp",
]
