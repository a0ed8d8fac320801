"""Hashing helpers for client identities."""

from __future__ import annotations

from blake3 import blake3


def _salt_key(salt: str) -> bytes:
    """Derive a 32-byte BLAKE3 key from an arbitrary salt string."""
    return blake3(salt.encode("utf-8"), derive_key_context="gatehouse ip-hash salt v1").digest()


def hash_client_address(address: str, salt: str) -> str:
    """Return a keyed BLAKE3 hex digest of a network address.

    The raw address is never stored; sessions are keyed by this digest.
    """
    normalized = address.strip().lower()
    return blake3(normalized.encode("utf-8"), key=_salt_key(salt)).hexdigest()
