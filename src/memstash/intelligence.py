"""
Intelligent logic layer: tokenization, term-frequency vectors, similarity,
and deduplication.

These utilities sit underneath the in-memory store to provide:
  - A deterministic bag-of-words "embedding" of a piece of text
  - Cosine similarity between two sparse vectors
  - Deduplication helpers to decide whether new content is novel
"""

from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Mapping, Sequence

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Cosine-similarity threshold above which new content is merged into an
#: existing memory instead of being stored as a new one.
SIMILARITY_THRESHOLD: float = 0.7

#: Prefix of every store-assigned memory ID.
ID_PREFIX: str = "mem_"

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

#: A sparse vector: token -> weight.
SparseVector = Mapping[str, float]


# ---------------------------------------------------------------------------
# Vectorizing
# ---------------------------------------------------------------------------


def tokenize(text: str) -> list[str]:
    """
    Split *text* into lowercase word tokens.

    Every character that is neither a word character nor whitespace is
    removed before splitting, so ``"don't"`` becomes ``"dont"``.
    """
    cleaned = _NON_WORD.sub("", text.lower())
    return [tok for tok in _WHITESPACE.split(cleaned) if tok]


def vectorize(text: str) -> dict[str, float]:
    """
    Return the term-frequency vector of *text*.

    Counts are divided by the highest count in the text, so the most
    frequent token always maps to ``1.0`` and every weight is in (0, 1].
    Text without tokens yields an empty mapping.
    """
    counts = Counter(tokenize(text))
    if not counts:
        return {}
    top = max(counts.values())
    return {token: count / top for token, count in counts.items()}


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def cosine_similarity(vec_a: SparseVector, vec_b: SparseVector) -> float:
    """
    Cosine similarity of two sparse vectors over the union of their tokens.

    Returns ``0.0`` when either vector has zero norm (an empty mapping
    included).  With the non-negative weights produced by :func:`vectorize`
    the result lies in [0, 1].
    """
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for token in set(vec_a) | set(vec_b):
        a = vec_a.get(token, 0.0)
        b = vec_b.get(token, 0.0)
        dot += a * b
        norm_a += a * a
        norm_b += b * b

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


# ---------------------------------------------------------------------------
# Deduplication helper
# ---------------------------------------------------------------------------


def deduplicate_content(
    similarities: Sequence[float],
    threshold: float = SIMILARITY_THRESHOLD,
) -> tuple[bool, int | None]:
    """
    Decide whether new content is a near-duplicate of a candidate.

    *similarities* are the cosine similarities of the new content against
    the candidate memories, best first as returned by a search.

    Returns:
        (is_duplicate, index_of_most_similar)
        where *index_of_most_similar* is the index of the best candidate,
        or ``None`` if there are no candidates.  The best candidate is a
        duplicate only when its similarity is strictly above *threshold*.
    """
    if not similarities:
        return False, None

    best_idx = max(range(len(similarities)), key=lambda i: similarities[i])
    return similarities[best_idx] > threshold, best_idx


# ---------------------------------------------------------------------------
# ID generation
# ---------------------------------------------------------------------------


def format_id(sequence: int) -> str:
    """Return the memory ID for counter value *sequence*."""
    return f"{ID_PREFIX}{sequence}"


def id_sequence(memory_id: str) -> int | None:
    """Return the counter value encoded in *memory_id*, or ``None``."""
    if not memory_id.startswith(ID_PREFIX):
        return None
    suffix = memory_id[len(ID_PREFIX):]
    return int(suffix) if re.fullmatch(r"[0-9]+", suffix) else None
