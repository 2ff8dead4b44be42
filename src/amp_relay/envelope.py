"""Message envelopes, payloads, and Ed25519 sender signatures.

The signed material for a message is::

    from|to|subject|priority|in_reply_to|base64(sha256(payload_json))

Hashing the serialized payload bounds the signed material to a fixed size and
keeps raw payload text out of the field concatenation.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from .errors import invalid_field, missing_field
from .utils import iso_utc, utcnow_naive

logger = logging.getLogger(__name__)

PRIORITIES: frozenset[str] = frozenset({"low", "normal", "high", "urgent"})
PAYLOAD_TYPES: frozenset[str] = frozenset({"request", "response", "notification", "update", "system"})
SIGNATURE_SEPARATOR = "|"
_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


class MessageIdFactory:
    """Process-unique, lexically sortable ids: ``msg_<epoch ms>_<seq><random>``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_ms = 0
        self._seq = 0

    def __call__(self) -> str:
        with self._lock:
            now_ms = int(time.time() * 1000)
            if now_ms <= self._last_ms:
                # Same millisecond (or clock stepped back): stay monotonic
                now_ms = self._last_ms
                self._seq += 1
            else:
                self._last_ms = now_ms
                self._seq = 0
            seq = self._seq
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(5))
        return f"msg_{now_ms:013d}_{seq:04d}{suffix}"


generate_message_id = MessageIdFactory()


@dataclass(slots=True, frozen=True)
class Payload:
    type: str
    message: str
    context: Optional[dict[str, Any]] = None
    attachments: Optional[list[dict[str, Any]]] = None
    security: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "message": self.message}
        if self.context is not None:
            data["context"] = self.context
        if self.attachments is not None:
            data["attachments"] = self.attachments
        if self.security is not None:
            data["security"] = self.security
        return data

    @classmethod
    def from_dict(cls, raw: Any, *, field_name: str = "payload") -> "Payload":
        if not isinstance(raw, Mapping):
            raise missing_field(field_name)
        ptype = raw.get("type")
        message = raw.get("message")
        if not isinstance(ptype, str) or not ptype or not isinstance(message, str) or not message:
            raise invalid_field(field_name, f"{field_name} must have type and message fields")
        if ptype not in PAYLOAD_TYPES:
            raise invalid_field(f"{field_name}.type", f"type must be one of {sorted(PAYLOAD_TYPES)}")
        context = raw.get("context")
        if context is not None and not isinstance(context, Mapping):
            raise invalid_field(f"{field_name}.context", "context must be an object")
        attachments = raw.get("attachments")
        if attachments is not None and not isinstance(attachments, list):
            raise invalid_field(f"{field_name}.attachments", "attachments must be an array")
        security = raw.get("security")
        return cls(
            type=ptype,
            message=message,
            context=dict(context) if context is not None else None,
            attachments=list(attachments) if attachments is not None else None,
            security=dict(security) if isinstance(security, Mapping) else None,
        )


@dataclass(slots=True, frozen=True)
class Envelope:
    id: str
    from_: str
    to: str
    subject: str
    priority: str = "normal"
    timestamp: str = field(default_factory=lambda: iso_utc(utcnow_naive()))
    signature: str = ""
    in_reply_to: Optional[str] = None

    def with_signature(self, signature: str) -> "Envelope":
        return replace(self, signature=signature)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "from": self.from_,
            "to": self.to,
            "subject": self.subject,
            "priority": self.priority,
            "timestamp": self.timestamp,
            "signature": self.signature,
        }
        if self.in_reply_to:
            data["in_reply_to"] = self.in_reply_to
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> "Envelope":
        if not isinstance(raw, Mapping):
            raise missing_field("envelope")
        for name in ("id", "from", "to"):
            value = raw.get(name)
            if not isinstance(value, str) or not value.strip():
                raise missing_field(f"envelope.{name}")
        subject = raw.get("subject")
        if subject is not None and not isinstance(subject, str):
            raise invalid_field("envelope.subject", "subject must be a string")
        priority = raw.get("priority") or "normal"
        if priority not in PRIORITIES:
            raise invalid_field("envelope.priority", f"priority must be one of {sorted(PRIORITIES)}")
        signature = raw.get("signature") or ""
        if not isinstance(signature, str):
            raise invalid_field("envelope.signature", "signature must be a string")
        in_reply_to = raw.get("in_reply_to") or None
        return cls(
            id=raw["id"].strip(),
            from_=raw["from"].strip(),
            to=raw["to"].strip(),
            subject=subject or "",
            priority=priority,
            timestamp=str(raw.get("timestamp") or iso_utc(utcnow_naive())),
            signature=signature,
            in_reply_to=str(in_reply_to) if in_reply_to else None,
        )


def create_envelope(
    from_address: str,
    to_address: str,
    subject: str,
    priority: Optional[str] = None,
    in_reply_to: Optional[str] = None,
) -> Envelope:
    """Build an unsigned envelope with a fresh id and timestamp."""
    resolved_priority = priority or "normal"
    if resolved_priority not in PRIORITIES:
        raise invalid_field("priority", f"priority must be one of {sorted(PRIORITIES)}")
    return Envelope(
        id=generate_message_id(),
        from_=from_address,
        to=to_address,
        subject=subject,
        priority=resolved_priority,
        in_reply_to=in_reply_to or None,
    )


def payload_digest(payload: Mapping[str, Any]) -> str:
    """Base64 SHA-256 of the compact JSON serialization of ``payload``."""
    serialized = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(hashlib.sha256(serialized.encode("utf-8")).digest()).decode("ascii")


def signing_material(envelope: Envelope, payload: Mapping[str, Any]) -> bytes:
    parts = [
        envelope.from_,
        envelope.to,
        envelope.subject,
        envelope.priority or "normal",
        envelope.in_reply_to or "",
        payload_digest(payload),
    ]
    return SIGNATURE_SEPARATOR.join(parts).encode("utf-8")


def generate_keypair() -> tuple[bytes, str]:
    """Return ``(32-byte seed, base64 public key)`` for a new Ed25519 keypair."""
    signing_key = SigningKey.generate()
    return bytes(signing_key), base64.b64encode(signing_key.verify_key.encode()).decode("ascii")


def public_key_for(seed: bytes) -> str:
    return base64.b64encode(SigningKey(seed[:32]).verify_key.encode()).decode("ascii")


def sign(envelope: Envelope, payload: Mapping[str, Any], private_key: bytes) -> str:
    """Sign ``envelope`` + ``payload`` with a 32-byte seed (or 64-byte expanded key)."""
    if len(private_key) not in (32, 64):
        raise ValueError("Signing key must be 32-byte seed or 64-byte expanded Ed25519 key.")
    signing_key = SigningKey(private_key[:32])
    signature = signing_key.sign(signing_material(envelope, payload)).signature
    return base64.b64encode(signature).decode("ascii")


def _decode_public_key(public_key: str) -> bytes:
    text = public_key.strip()
    if len(text) == 64:
        try:
            return bytes.fromhex(text)
        except ValueError:
            pass
    return base64.b64decode(text, validate=True)


def verify(envelope: Envelope, payload: Mapping[str, Any], signature: str, public_key: str) -> bool:
    """Check ``signature`` against ``public_key``; any failure is False, never an exception."""
    if not signature or not public_key:
        return False
    try:
        verify_key = VerifyKey(_decode_public_key(public_key))
        verify_key.verify(signing_material(envelope, payload), base64.b64decode(signature, validate=True))
        return True
    except (BadSignatureError, CryptoError, binascii.Error, ValueError, TypeError) as exc:
        logger.debug("signature.verify_failed", extra={"message_id": envelope.id, "error": type(exc).__name__})
        return False
