import base64

import pytest

from amp_relay.envelope import (
    Envelope,
    Payload,
    create_envelope,
    generate_keypair,
    generate_message_id,
    payload_digest,
    public_key_for,
    sign,
    signing_material,
    verify,
)
from amp_relay.errors import AmpError


def _message():
    envelope = create_envelope("alice@org.aimaestro.local", "bob@org.aimaestro.local", "Build status", "high")
    payload = {"type": "notification", "message": "build green", "context": {"run": 17, "branch": "main"}}
    return envelope, payload


def test_create_envelope_defaults():
    envelope = create_envelope("a@o.aimaestro.local", "b@o.aimaestro.local", "hi")
    assert envelope.id.startswith("msg_")
    assert envelope.priority == "normal"
    assert envelope.signature == ""
    assert envelope.in_reply_to is None
    assert envelope.timestamp.endswith("Z")


def test_create_envelope_rejects_unknown_priority():
    with pytest.raises(AmpError) as exc_info:
        create_envelope("a@o.aimaestro.local", "b@o.aimaestro.local", "hi", "critical")
    assert exc_info.value.error_type == "invalid_field"


def test_message_ids_are_unique_and_sortable():
    ids = [generate_message_id() for _ in range(500)]
    assert len(set(ids)) == len(ids)
    assert ids == sorted(ids)


def test_sign_and_verify_round_trip():
    envelope, payload = _message()
    seed, public_key = generate_keypair()
    signature = sign(envelope, payload, seed)
    assert verify(envelope, payload, signature, public_key)
    assert public_key_for(seed) == public_key


def test_verify_accepts_hex_public_key():
    envelope, payload = _message()
    seed, public_key = generate_keypair()
    signature = sign(envelope, payload, seed)
    hex_key = base64.b64decode(public_key).hex()
    assert verify(envelope, payload, signature, hex_key)


def test_tampering_breaks_signature():
    envelope, payload = _message()
    seed, public_key = generate_keypair()
    signature = sign(envelope, payload, seed)
    tampered_payload = dict(payload, message="build red")
    assert not verify(envelope, tampered_payload, signature, public_key)
    retargeted = Envelope.from_dict(dict(envelope.to_dict(), to="mallory@org.aimaestro.local"))
    assert not verify(retargeted, payload, signature, public_key)


def test_verify_never_raises_on_garbage():
    envelope, payload = _message()
    _seed, public_key = generate_keypair()
    assert not verify(envelope, payload, "not-base64!!", public_key)
    assert not verify(envelope, payload, base64.b64encode(b"short").decode(), public_key)
    assert not verify(envelope, payload, "", public_key)
    assert not verify(envelope, payload, "AAAA", "")
    assert not verify(envelope, payload, "AAAA", "zz-not-a-key")


def test_signing_material_uses_payload_digest():
    envelope, payload = _message()
    material = signing_material(envelope, payload).decode()
    parts = material.split("|")
    assert parts[:5] == [envelope.from_, envelope.to, envelope.subject, "high", ""]
    assert parts[5] == payload_digest(payload)
    assert "build green" not in material


def test_payload_digest_is_key_order_sensitive_compact_json():
    a = payload_digest({"type": "request", "message": "x"})
    b = payload_digest({"message": "x", "type": "request"})
    assert a != b
    assert a == payload_digest({"type": "request", "message": "x"})


def test_payload_validation():
    with pytest.raises(AmpError) as exc_info:
        Payload.from_dict({"type": "gossip", "message": "x"})
    assert exc_info.value.field == "payload.type"
    with pytest.raises(AmpError):
        Payload.from_dict({"type": "request"})
    with pytest.raises(AmpError) as missing:
        Payload.from_dict(None)
    assert missing.value.error_type == "missing_field"


def test_envelope_from_dict_requires_fields():
    with pytest.raises(AmpError) as exc_info:
        Envelope.from_dict({"id": "msg_1", "from": "a@o.aimaestro.local"})
    assert exc_info.value.field == "envelope.to"
