"""
Federation Signing

Canonical encoding, content hashing and Ed25519 signatures for bundles.

The signed and hashed unit is always the exact byte string that goes on the
wire. Verifiers hash and check the bytes they received, never a re-encoding.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
from pathlib import Path
from typing import Any, Optional, Tuple

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from ... import config
from ...errors import ConfigurationError


logger = logging.getLogger(__name__)


def canonical_bytes(payload: Any) -> bytes:
    """Sorted keys, compact separators, UTF-8."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def content_hash(body: bytes) -> str:
    """Hex SHA-256 of the exact body bytes."""
    return hashlib.sha256(body).hexdigest()


def hashes_match(body: bytes, declared_hex: str) -> bool:
    """Constant-time comparison of the body's hash against a declared hex digest."""
    return hmac.compare_digest(content_hash(body), (declared_hex or "").strip().lower())


def sign(body: bytes, private_key: ed25519.Ed25519PrivateKey) -> str:
    """Base64 detached Ed25519 signature over the body."""
    return base64.b64encode(private_key.sign(body)).decode("ascii")


def verify(body: bytes, signature_b64: str, public_key_pem: str) -> bool:
    """
    Verify a detached signature with a PEM public key.

    Returns False for malformed signatures, malformed or non-Ed25519 keys,
    and signatures that do not match.
    """
    try:
        signature = base64.b64decode(signature_b64 or "", validate=True)
    except (binascii.Error, ValueError):
        return False

    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
    except (ValueError, TypeError, AttributeError, UnsupportedAlgorithm) as e:
        logger.warning(f"Unusable peer public key: {e}")
        return False
    if not isinstance(public_key, ed25519.Ed25519PublicKey):
        logger.warning("Peer public key is not Ed25519")
        return False

    try:
        public_key.verify(signature, body)
        return True
    except InvalidSignature:
        return False


def generate_keypair() -> Tuple[str, str]:
    """New Ed25519 keypair as (private PEM, public PEM)."""
    private_key = ed25519.Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    return private_pem, public_pem_for(private_key)


def public_pem_for(private_key: ed25519.Ed25519PrivateKey) -> str:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def load_private_key(pem: str) -> ed25519.Ed25519PrivateKey:
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ConfigurationError(f"Node signing key is unreadable: {e}")
    if not isinstance(key, ed25519.Ed25519PrivateKey):
        raise ConfigurationError("Node signing key must be Ed25519")
    return key


def load_node_signing_key(
    pem: Optional[str] = None,
    path: Optional[str] = None,
) -> ed25519.Ed25519PrivateKey:
    """
    Load this node's private key from SC_NODE_SIGNING_KEY_PEM or
    SC_NODE_SIGNING_KEY_PATH.

    Raises:
        ConfigurationError: No key configured or key unreadable
    """
    pem = pem if pem is not None else config.NODE_SIGNING_KEY_PEM
    path = path if path is not None else config.NODE_SIGNING_KEY_PATH

    if pem:
        return load_private_key(pem)
    if path:
        try:
            return load_private_key(Path(path).read_text())
        except OSError as e:
            raise ConfigurationError(f"Cannot read node signing key at {path}: {e}")
    raise ConfigurationError("Node signing key is not configured")
