"""Vector helpers shared by the pipeline, storage and search."""

from __future__ import annotations

import math
import struct

# OpenAI text-embedding-3-large
DEFAULT_DIMENSIONS = 3072


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(blob: bytes | None) -> list[float] | None:
    """Inverse of serialize_f32. Returns None for NULL columns."""
    if blob is None:
        return None
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


def l2_normalize(vector: list[float]) -> list[float]:
    magnitude = math.sqrt(sum(v * v for v in vector))
    if magnitude == 0:
        return list(vector)
    return [v / magnitude for v in vector]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity in [-1, 1].

    Vectors of different length are incomparable and score 0, as do
    zero-magnitude vectors.
    """
    if len(a) != len(b) or not a:
        return 0.0

    dot = 0.0
    mag_a = 0.0
    mag_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        mag_a += x * x
        mag_b += y * y

    if mag_a == 0 or mag_b == 0:
        return 0.0

    similarity = dot / (math.sqrt(mag_a) * math.sqrt(mag_b))
    # Float drift can push identical vectors slightly past 1.0
    return max(-1.0, min(1.0, similarity))


def average_embeddings(vectors: list[list[float]]) -> list[float]:
    """Component-wise mean, re-normalized to unit length.

    Returns an empty vector for empty input.
    """
    if not vectors:
        return []

    dimensions = len(vectors[0])
    total = [0.0] * dimensions
    for vector in vectors:
        if len(vector) != dimensions:
            raise ValueError(
                f"Cannot average embeddings of different dimensions: {dimensions} vs {len(vector)}"
            )
        for i, value in enumerate(vector):
            total[i] += value

    count = len(vectors)
    return l2_normalize([value / count for value in total])
