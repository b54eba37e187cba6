"""Read-only pattern repository populated at startup."""

from collections.abc import Mapping
from types import MappingProxyType
from typing import Protocol

from expert_panel.relevance import tokenize


class PatternRepository(Protocol):
    def lookup(self, key: str) -> str | None: ...

    def keys(self) -> list[str]: ...


class InMemoryPatternRepository:
    """Immutable key -> pattern map; safe to share across concurrent requests."""

    def __init__(self, patterns: Mapping[str, str]) -> None:
        self._patterns = MappingProxyType({k.lower(): v for k, v in patterns.items()})

    def lookup(self, key: str) -> str | None:
        return self._patterns.get(key.lower())

    def keys(self) -> list[str]:
        return sorted(self._patterns)


def match_patterns(repository: PatternRepository, text: str) -> list[tuple[str, str]]:
    """Patterns whose key appears as a word (or word prefix) in text, sorted by key."""
    tokens = tokenize(text)
    matched: list[tuple[str, str]] = []
    for key in repository.keys():
        if any(tok.startswith(key) for tok in tokens):
            pattern = repository.lookup(key)
            if pattern:
                matched.append((key, pattern))
    return matched
