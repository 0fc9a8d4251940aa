"""Hashing and VAPID key helpers."""

import base64
import hashlib

from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from py_vapid import Vapid


def base64url_encode(data: bytes) -> str:
    """Base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def sha256_base64url(text: str) -> str:
    return base64url_encode(hashlib.sha256(text.encode("utf-8")).digest())


def entry_id(feed_id: str, guid_or_url: str) -> str:
    """Deterministic entry id, stable across repeated fetches of a feed."""
    return f"entry_{sha256_base64url(f'{feed_id}|{guid_or_url}')}"


def load_vapid_key(private_key: str) -> Vapid:
    """Load a VAPID signing key from a PEM string or a base64url raw key."""
    if "BEGIN" in private_key:
        return Vapid.from_pem(private_key.encode("utf-8"))
    return Vapid.from_raw(private_key.strip().encode("ascii"))


def vapid_public_key(vapid: Vapid) -> str:
    """Uncompressed P-256 point, base64url, as browsers expect it."""
    public = vapid.public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return base64url_encode(public)


def generate_vapid_keys() -> tuple[str, str]:
    """Generate a new key pair as (public, private) base64url raw strings."""
    vapid = Vapid()
    vapid.generate_keys()
    private = vapid.private_key.private_numbers().private_value.to_bytes(32, "big")
    return vapid_public_key(vapid), base64url_encode(private)


def verify_vapid_keys(public_key: str, private_key: str) -> tuple[str, bool]:
    """Derive the public key from a private key and compare it.

    Returns:
        The derived public key and whether it equals ``public_key``.

    Raises:
        Exception: Whatever py_vapid raises for an unloadable private key.
    """
    derived = vapid_public_key(load_vapid_key(private_key))
    return derived, derived == public_key.strip()
