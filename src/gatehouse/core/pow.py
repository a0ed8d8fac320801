"""Proof-of-work helpers.

A puzzle is a random salt plus a difficulty. A solution is a nonce such that
``blake3(salt | payload_digest | nonce_le64)`` starts with at least
``target_bits`` zero bits, where the payload digest binds the work to one
challenge session.
"""
from __future__ import annotations

from blake3 import blake3

DEFAULT_TARGET_BITS = 16
BLAKE3_DIGEST_BYTES = 32
MAX_TARGET_BITS = 256
NONCE_SIZE_BYTES = 8
MAX_NONCE = 2 ** (8 * NONCE_SIZE_BYTES) - 1


def payload_digest(session_id: str) -> bytes:
    """Return the 32-byte digest a challenge session's puzzles are bound to."""
    return blake3(session_id.encode("utf-8")).digest()


def leading_zero_bits(digest: bytes) -> int:
    """Count the leading zero bits of ``digest``."""
    zeros = 0
    for byte in digest:
        if byte == 0:
            zeros += 8
            continue
        zeros += 8 - byte.bit_length()
        break
    return zeros


def validate_solution(
    salt_bytes: bytes,
    payload: bytes,
    nonce: int,
    target_bits: int,
) -> bool:
    """Validate a proposed proof-of-work solution.

    Args:
        salt_bytes: Server-provided random salt.
        payload: Digest of the challenge session id (32 bytes).
        nonce: Unsigned 64-bit integer chosen by the client.
        target_bits: Number of leading zero bits required in the hash.

    Returns:
        True if the hash has at least ``target_bits`` leading zero bits;
        False otherwise, including for malformed inputs.
    """
    if len(payload) != BLAKE3_DIGEST_BYTES:
        return False
    if not (0 <= target_bits <= MAX_TARGET_BITS):
        return False
    if not (0 <= nonce <= MAX_NONCE):
        return False

    data = salt_bytes + payload + nonce.to_bytes(NONCE_SIZE_BYTES, "little", signed=False)
    return leading_zero_bits(blake3(data).digest()) >= target_bits


def solve(salt_bytes: bytes, payload: bytes, target_bits: int, start: int = 0) -> int:
    """Search nonces from ``start`` until one satisfies the puzzle.

    Reference solver for clients and tests; cost doubles with each target bit.
    """
    nonce = start
    while not validate_solution(salt_bytes, payload, nonce, target_bits):
        nonce += 1
    return nonce
