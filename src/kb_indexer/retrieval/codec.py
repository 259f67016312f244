"""Binary vector encoding and cosine similarity."""

from __future__ import annotations

import math
import struct
from collections.abc import Sequence

from kb_indexer.exceptions import DimensionMismatchError

FLOAT_BYTES = 4


def pack_vector(vector: Sequence[float]) -> bytes:
    """Serialise *vector* as little-endian IEEE-754 float32 values."""
    return struct.pack(f"<{len(vector)}f", *vector)


def unpack_vector(payload: bytes, dims: int | None = None) -> list[float]:
    """Inverse of :func:`pack_vector`.

    Parameters
    ----------
    payload:
        Packed float32 bytes.
    dims:
        Stored dimensionality; when given it must agree with the payload
        length.
    """
    if len(payload) % FLOAT_BYTES:
        raise ValueError(f"Vector payload length {len(payload)} is not a multiple of {FLOAT_BYTES}")
    count = len(payload) // FLOAT_BYTES
    if dims is not None and count != dims:
        raise DimensionMismatchError(
            "Stored dimensionality does not match payload",
            {"stored_dims": dims, "payload_dims": count},
        )
    return list(struct.unpack(f"<{count}f", payload))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of *a* and *b* in ``[-1.0, 1.0]``.

    Vectors of different length raise :class:`DimensionMismatchError`; a
    zero-norm vector scores ``0.0``.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(
            "Cannot compare vectors of different dimensionality",
            {"left_dims": len(a), "right_dims": len(b)},
        )

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    score = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    return max(-1.0, min(1.0, score))
