from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterable, Sequence

from kbembed.domain.records import ChunkMatch


SOURCE_REPEAT_PENALTY = 0.08

_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(all|any|previous)\s+instructions", re.IGNORECASE),
    re.compile(r"system\s+prompt", re.IGNORECASE),
    re.compile(r"developer\s+instructions", re.IGNORECASE),
    re.compile(r"reveal\s+(secret|token|key|credentials)", re.IGNORECASE),
    re.compile(r"do\s+not\s+follow\s+the\s+rules", re.IGNORECASE),
    re.compile(r"jailbreak", re.IGNORECASE),
]


@dataclass(frozen=True)
class RankedChunk:
    chunk: ChunkMatch
    source_penalty: float
    mmr_score: float


def is_likely_injection(content: str) -> bool:
    return any(pattern.search(content) for pattern in _INJECTION_PATTERNS)


def filter_injection_candidates(rows: Iterable[ChunkMatch]) -> tuple[list[ChunkMatch], int]:
    # Returns the surviving candidates and how many were dropped.
    kept: list[ChunkMatch] = []
    dropped = 0
    for row in rows:
        if is_likely_injection(row.content):
            dropped += 1
        else:
            kept.append(row)
    return kept, dropped


def rank_chunks_with_diversity(
    candidates: Sequence[ChunkMatch],
    final_count: int,
    max_per_source: int,
) -> list[RankedChunk]:
    """Greedy source-diverse selection over similarity-ranked candidates.

    Each round picks the remaining candidate with the highest
    ``similarity - 0.08 * picks_from_same_source``; sources at
    ``max_per_source`` are skipped. Ties keep the earlier candidate.
    """
    remaining = list(candidates)
    selected: list[RankedChunk] = []
    per_source: dict[str, int] = {}

    while remaining and len(selected) < final_count:
        best_index = -1
        best_score = float("-inf")
        best_penalty = 0.0
        for index, row in enumerate(remaining):
            count = per_source.get(row.source_id, 0)
            if count >= max_per_source:
                continue
            penalty = count * SOURCE_REPEAT_PENALTY
            score = row.similarity - penalty
            if score > best_score:
                best_index = index
                best_score = score
                best_penalty = penalty
        if best_index < 0:
            break
        picked = remaining.pop(best_index)
        per_source[picked.source_id] = per_source.get(picked.source_id, 0) + 1
        selected.append(RankedChunk(chunk=picked, source_penalty=best_penalty, mmr_score=best_score))
    return selected
