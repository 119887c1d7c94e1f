"""Ed25519 request signing for the ``ActorSig`` scheme, using PyNaCl."""

import hashlib
import secrets
import uuid
from datetime import UTC, datetime

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

AUTH_SCHEME = "ActorSig"


def generate_keypair() -> tuple[str, str]:
    """Returns (private_key_hex, public_key_hex)."""
    signing_key = SigningKey.generate()
    private_hex = signing_key.encode(encoder=HexEncoder).decode()
    public_hex = signing_key.verify_key.encode(encoder=HexEncoder).decode()
    return private_hex, public_hex


def build_signature_message(timestamp: str, method: str, path: str, body: bytes) -> bytes:
    """timestamp\\nMETHOD\\npath\\nsha256(body)"""
    body_hash = hashlib.sha256(body).hexdigest()
    return f"{timestamp}\n{method.upper()}\n{path}\n{body_hash}".encode()


def sign_request(
    private_key_hex: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> str:
    signing_key = SigningKey(private_key_hex.encode(), encoder=HexEncoder)
    signed = signing_key.sign(
        build_signature_message(timestamp, method, path, body), encoder=HexEncoder
    )
    return signed.signature.decode()


def verify_signature(
    public_key_hex: str,
    signature_hex: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> bool:
    try:
        verify_key = VerifyKey(public_key_hex.encode(), encoder=HexEncoder)
        verify_key.verify(
            build_signature_message(timestamp, method, path, body),
            HexEncoder.decode(signature_hex.encode()),
        )
    except (BadSignatureError, ValueError, TypeError):
        return False
    return True


def parse_authorization(header: str | None) -> tuple[uuid.UUID, str] | None:
    """Split ``ActorSig <actor_id>:<signature>``. None when absent or malformed."""
    prefix = f"{AUTH_SCHEME} "
    if not header or not header.startswith(prefix):
        return None
    actor_part, sep, signature = header[len(prefix):].partition(":")
    if not sep or not signature:
        return None
    try:
        return uuid.UUID(actor_part), signature
    except ValueError:
        return None


def signed_headers(
    actor_id: uuid.UUID | str,
    private_key_hex: str,
    method: str,
    path: str,
    body: bytes = b"",
) -> dict[str, str]:
    """Headers for a signed request: Authorization, X-Timestamp and a fresh X-Nonce."""
    timestamp = datetime.now(UTC).isoformat()
    signature = sign_request(private_key_hex, timestamp, method, path, body)
    return {
        "Authorization": f"{AUTH_SCHEME} {actor_id}:{signature}",
        "X-Timestamp": timestamp,
        "X-Nonce": secrets.token_hex(16),
    }


def is_timestamp_valid(timestamp: str, max_age_seconds: int = 30) -> bool:
    """Timezone-aware ISO timestamp within ``max_age_seconds`` of now, either side."""
    try:
        ts = datetime.fromisoformat(timestamp)
    except (ValueError, TypeError):
        return False
    if ts.tzinfo is None:
        return False
    return abs((datetime.now(UTC) - ts).total_seconds()) <= max_age_seconds
