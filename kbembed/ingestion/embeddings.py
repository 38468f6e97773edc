from __future__ import annotations

import hashlib
import math
import re
from typing import Sequence

from kbembed.core.config import EMBED_DIM
from kbembed.core.errors import ProviderFormatError
from kbembed.providers.llm.base import GenerativeProvider


_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


def _hash_token(token: str) -> tuple[int, float]:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    # Hash to a stable index within the fixed embedding dimension.
    idx = int(digest[:8], 16) % EMBED_DIM
    sign = 1.0 if int(digest[8:12], 16) % 2 == 0 else -1.0
    magnitude = (int(digest[12:20], 16) % 1000) / 1000.0
    return idx, sign * (0.2 + magnitude)


def hash_embedding(text: str) -> list[float]:
    # Deterministic bag-of-words vector used by the fake provider.
    vector = [0.0] * EMBED_DIM
    tokens = _TOKEN_RE.findall(text.lower())
    if not tokens:
        return vector
    for token in tokens:
        idx, value = _hash_token(token)
        vector[idx] += value
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


async def embed_in_batches(
    provider: GenerativeProvider,
    *,
    model: str,
    texts: Sequence[str],
    batch_size: int,
) -> list[list[float]]:
    # Fixed-size batches keep request bodies bounded for large sources.
    vectors: list[list[float]] = []
    step = max(1, batch_size)
    for start in range(0, len(texts), step):
        batch = list(texts[start : start + step])
        batch_vectors = await provider.embed(model=model, texts=batch)
        if len(batch_vectors) != len(batch):
            raise ProviderFormatError("embedding batch size mismatch")
        vectors.extend(batch_vectors)
    for vector in vectors:
        if len(vector) != EMBED_DIM:
            raise ProviderFormatError("embedding dimension mismatch")
    return vectors
