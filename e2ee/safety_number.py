"""Safety numbers: short, symmetric fingerprints of a pair of identity keys."""

from .primitives import sha256

SAFETY_NUMBER_BYTES = 16


def compute_safety_number(identity_a: bytes, identity_b: bytes) -> str:
    """
    Fingerprint two identity public keys.

    The keys are concatenated in ascending byte order, so the result does
    not depend on which user asks.

    Returns:
        32 lowercase hex characters
    """
    first, second = sorted((bytes(identity_a), bytes(identity_b)))
    return sha256(first, second)[:SAFETY_NUMBER_BYTES].hex()
