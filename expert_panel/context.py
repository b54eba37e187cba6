"""Shared request context: built once per request, read-only for every expert."""

import logging
import threading
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from expert_panel.knowledge import PatternRepository, match_patterns
from expert_panel.models import ExpertDescriptor, Request

logger = logging.getLogger(__name__)

SESSION_KEY = "session_id"


class StructuralAnalyzer(Protocol):
    def analyze(self, source_text: str) -> Mapping[str, Any]: ...


@dataclass(frozen=True)
class HistoryEntry:
    request_id: str
    mode: str
    summary: str
    confidence: float | None = None


@dataclass(frozen=True)
class RequestContext:
    request: Request
    structural_facts: Mapping[str, Any] | None = None
    session_history: tuple[HistoryEntry, ...] = ()
    patterns: tuple[tuple[str, str], ...] = ()

    @property
    def prompt(self) -> str:
        return self.request.prompt


class SessionHistory:
    """Last N results per session id. Shared between requests, so writes are locked."""

    def __init__(self, limit: int = 10) -> None:
        self._limit = limit
        self._sessions: dict[str, deque[HistoryEntry]] = {}
        self._lock = threading.Lock()

    def recent(self, session_id: str | None) -> tuple[HistoryEntry, ...]:
        if not session_id:
            return ()
        with self._lock:
            return tuple(self._sessions.get(session_id, ()))

    def record(self, session_id: str | None, entry: HistoryEntry) -> None:
        if not session_id:
            return
        with self._lock:
            self._sessions.setdefault(session_id, deque(maxlen=self._limit)).append(entry)


def session_id_of(request: Request) -> str | None:
    value = request.session_context.get(SESSION_KEY)
    return str(value) if value else None


class ContextBuilder:
    """Assembles prompt, structural facts, session history and patterns for one request."""

    def __init__(
        self,
        *,
        analyzer: StructuralAnalyzer | None = None,
        patterns: PatternRepository | None = None,
        history: SessionHistory | None = None,
    ) -> None:
        self._analyzer = analyzer
        self._patterns = patterns
        self._history = history

    def build(self, request: Request) -> RequestContext:
        facts = request.structural_facts
        if facts is None and request.source_text and self._analyzer is not None:
            try:
                facts = dict(self._analyzer.analyze(request.source_text))
            except Exception as exc:
                # Structural facts are optional: experts still run on the prompt alone
                logger.warning("Structural analysis failed for %s: %s", request.id, exc)
                facts = None

        history = self._history.recent(session_id_of(request)) if self._history else ()
        patterns = tuple(match_patterns(self._patterns, request.prompt)) if self._patterns else ()

        return RequestContext(
            request=request,
            structural_facts=facts,
            session_history=history,
            patterns=patterns,
        )


def _format_facts(facts: Mapping[str, Any] | None) -> str:
    if not facts:
        return ""
    lines = ["Structural facts:"]
    lines += [f"- {key}: {value}" for key, value in facts.items()]
    return "\n".join(lines) + "\n"


def _format_patterns(patterns: tuple[tuple[str, str], ...]) -> str:
    if not patterns:
        return ""
    lines = ["Relevant patterns:"]
    lines += [f"- {key}: {text}" for key, text in patterns]
    return "\n".join(lines) + "\n"


def _format_history(context: RequestContext) -> str:
    session = {k: v for k, v in context.request.session_context.items() if k != SESSION_KEY}
    if not context.session_history and not session:
        return ""
    lines: list[str] = []
    if session:
        lines.append("Session context:")
        lines += [f"- {key}: {value}" for key, value in session.items()]
    if context.session_history:
        lines.append("Earlier in this session:")
        lines += [f"- ({h.mode}) {h.summary}" for h in context.session_history]
    return "\n".join(lines) + "\n"


def render_expert_prompt(template: str, expert: ExpertDescriptor, context: RequestContext) -> str:
    """Fill the expert prompt template for one expert."""
    return template.format(
        display_name=expert.display_name,
        persona=expert.persona,
        prompt=context.prompt,
        facts=_format_facts(context.structural_facts),
        patterns=_format_patterns(context.patterns),
        history=_format_history(context),
    )
