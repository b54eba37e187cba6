"""Topical relevance scoring.

Scorers are injectable: anything with ``score(text) -> float`` in [0, 1]
can replace the keyword-density heuristic without touching the weight
calculator or the resolver.
"""

import hashlib
import logging
import re
import threading
from collections.abc import Iterable, Mapping
from typing import Protocol

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9_]+")

# One expected domain term per this many words saturates the density
_WORDS_PER_HIT = 20


class RelevanceScorer(Protocol):
    def score(self, text: str) -> float: ...


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


class KeywordDensityScorer:
    """Density of distinct domain terms in a text, normalised by its length.

    A term hits when any word starts with it, so "test" matches "tests" and
    "testing". Deterministic for a given vocabulary and text.
    """

    def __init__(self, terms: Iterable[str]) -> None:
        self.terms = tuple(sorted({t.lower().strip() for t in terms if t.strip()}))

    def score(self, text: str) -> float:
        if not self.terms:
            return 0.0
        tokens = tokenize(text)
        if not tokens:
            return 0.0
        hits = sum(1 for term in self.terms if any(tok.startswith(term) for tok in tokens))
        return min(1.0, hits / max(1.0, len(tokens) / _WORDS_PER_HIT))


class RelevanceCache:
    """Memoised scores keyed by a content hash.

    Reads never take the lock. Writes try the lock without blocking and are
    dropped on contention, so a busy cache degrades to recomputing.
    """

    def __init__(self, max_entries: int = 1024) -> None:
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()
        self._max_entries = max_entries

    @staticmethod
    def key(domain: str, text: str) -> str:
        digest = hashlib.sha256()
        digest.update(domain.encode("utf-8"))
        digest.update(b"\0")
        digest.update(text.encode("utf-8"))
        return digest.hexdigest()

    def get(self, key: str) -> float | None:
        return self._entries.get(key)

    def put(self, key: str, value: float) -> bool:
        if not self._lock.acquire(blocking=False):
            logger.debug("Relevance cache busy, skipping write")
            return False
        try:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                # dicts keep insertion order: evict the oldest entry
                del self._entries[next(iter(self._entries))]
            self._entries[key] = value
        finally:
            self._lock.release()
        return True

    def __len__(self) -> int:
        return len(self._entries)


class CachedScorer:
    """Wraps a scorer with a shared RelevanceCache, namespaced by domain."""

    def __init__(self, domain: str, scorer: RelevanceScorer, cache: RelevanceCache) -> None:
        self.domain = domain
        self._scorer = scorer
        self._cache = cache

    def score(self, text: str) -> float:
        key = RelevanceCache.key(self.domain, text)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        value = self._scorer.score(text)
        self._cache.put(key, value)
        return value


def build_scorers(
    vocabularies: Mapping[str, Iterable[str]],
    cache: RelevanceCache | None = None,
) -> dict[str, RelevanceScorer]:
    """Build one keyword scorer per domain vocabulary, optionally cached."""
    scorers: dict[str, RelevanceScorer] = {}
    for domain, terms in vocabularies.items():
        scorer: RelevanceScorer = KeywordDensityScorer(terms)
        if cache is not None:
            scorer = CachedScorer(domain, scorer, cache)
        scorers[domain] = scorer
    return scorers


def dominant_domain(text: str, scorers: Mapping[str, RelevanceScorer]) -> str | None:
    """Domain whose vocabulary scores highest on text; None on a tie or no signal."""
    scores = {domain: scorer.score(text) for domain, scorer in scorers.items()}
    if not scores:
        return None
    best = max(scores.values())
    if best <= 0.0:
        return None
    leaders = [d for d, s in scores.items() if s == best]
    return leaders[0] if len(leaders) == 1 else None
