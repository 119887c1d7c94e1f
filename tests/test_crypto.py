"""Unit tests for escrow_engine/utils/crypto.py."""

import uuid
from datetime import UTC, datetime, timedelta

from escrow_engine.utils.crypto import (
    AUTH_SCHEME,
    generate_keypair,
    is_timestamp_valid,
    parse_authorization,
    sign_request,
    signed_headers,
    verify_signature,
)


def test_generate_keypair_format() -> None:
    """generate_keypair returns hex strings of 32 bytes each."""
    priv, pub = generate_keypair()
    assert len(priv) == 64
    assert len(pub) == 64
    bytes.fromhex(priv)
    bytes.fromhex(pub)


def test_sign_verify_round_trip() -> None:
    priv, pub = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv, ts, "POST", "/offers/accepted", b'{"a":1}')
    assert verify_signature(pub, sig, ts, "POST", "/offers/accepted", b'{"a":1}')


def test_verify_tampered_body() -> None:
    priv, pub = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv, ts, "POST", "/disputes/1/resolve", b'{"buyer_amount":30000}')
    assert not verify_signature(pub, sig, ts, "POST", "/disputes/1/resolve", b'{"buyer_amount":90000}')


def test_verify_wrong_key_rejected() -> None:
    priv1, _ = generate_keypair()
    _, pub2 = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv1, ts, "GET", "/transactions", b"")
    assert not verify_signature(pub2, sig, ts, "GET", "/transactions", b"")


def test_verify_wrong_method_rejected() -> None:
    priv, pub = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv, ts, "GET", "/transactions", b"")
    assert not verify_signature(pub, sig, ts, "POST", "/transactions", b"")


def test_verify_garbage_signature() -> None:
    _, pub = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    assert not verify_signature(pub, "not-hex", ts, "GET", "/transactions", b"")
    assert not verify_signature("zz", "00" * 64, ts, "GET", "/transactions", b"")


def test_timestamp_valid_naive_rejected() -> None:
    assert not is_timestamp_valid("2026-01-01T00:00:00", 30)


def test_timestamp_valid_garbage_rejected() -> None:
    assert not is_timestamp_valid("not-a-date", 30)
    assert not is_timestamp_valid("", 30)


def test_timestamp_valid_in_window() -> None:
    ts = datetime.now(UTC).isoformat()
    assert is_timestamp_valid(ts, 30)


def test_timestamp_valid_expired() -> None:
    ts = (datetime.now(UTC) - timedelta(seconds=60)).isoformat()
    assert not is_timestamp_valid(ts, 30)


def test_parse_authorization() -> None:
    actor_id = uuid.uuid4()
    assert parse_authorization(f"{AUTH_SCHEME} {actor_id}:abc123") == (actor_id, "abc123")
    assert parse_authorization(None) is None
    assert parse_authorization(f"Bearer {actor_id}:abc123") is None
    assert parse_authorization(f"{AUTH_SCHEME} {actor_id}") is None
    assert parse_authorization(f"{AUTH_SCHEME} not-a-uuid:abc123") is None


def test_signed_headers_verify() -> None:
    priv, pub = generate_keypair()
    actor_id = uuid.uuid4()
    headers = signed_headers(actor_id, priv, "PUT", "/transactions/x/milestones/y", b'{"approve":true}')
    parsed_id, signature = parse_authorization(headers["Authorization"])
    assert parsed_id == actor_id
    assert len(headers["X-Nonce"]) == 32
    assert verify_signature(
        pub, signature, headers["X-Timestamp"], "PUT", "/transactions/x/milestones/y", b'{"approve":true}'
    )


def test_signed_headers_fresh_nonce() -> None:
    priv, _ = generate_keypair()
    nonces = {signed_headers(uuid.uuid4(), priv, "GET", "/")["X-Nonce"] for _ in range(50)}
    assert len(nonces) == 50
