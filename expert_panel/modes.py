"""Mode selection and trigger classification."""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from expert_panel.errors import InvalidRequest
from expert_panel.models import AUTO, CODE_MUTATION, CONSENSUS, PLANNING_DISCUSSION, SINGULAR

logger = logging.getLogger(__name__)

REQUESTED_MODES = {CONSENSUS, SINGULAR, AUTO}
TRIGGER_KINDS = {CODE_MUTATION, PLANNING_DISCUSSION}

DEFAULT_CODE_MUTATION_EVENTS = (
    "file-save", "file-create", "file-delete", "file-rename", "commit", "pre-commit", "refactor", "code-edit",
)
DEFAULT_PLANNING_EVENTS = (
    "issue-created", "issue-comment", "discussion", "planning", "question", "design-review",
)


def select_mode(requested_mode: str, trigger: str | None = None) -> str:
    """Resolve a requested mode to "consensus" or "singular".

    Explicit modes pass through. "auto" follows the trigger: code mutations
    need one vetted answer (consensus), planning and discussion benefit from
    independent views (singular). A request with no trigger is a direct
    code-assistance call and resolves to consensus.

    Raises:
        InvalidRequest: If requested_mode is not a known mode.
    """
    if requested_mode == CONSENSUS or requested_mode == SINGULAR:
        return requested_mode
    if requested_mode != AUTO:
        raise InvalidRequest(f"Unknown requested mode: {requested_mode!r}")
    if trigger == PLANNING_DISCUSSION:
        return SINGULAR
    return CONSENSUS


@dataclass(frozen=True)
class TriggerEvent:
    kind: str                       # e.g. "file-save", "issue-created"
    payload: Mapping[str, Any] = field(default_factory=dict)


class EventClassifier:
    """Coarse classification of external events into trigger kinds.

    Unknown event kinds classify as planning-discussion: only events known
    to change code force a consensus answer.
    """

    def __init__(
        self,
        code_mutation: Iterable[str] = DEFAULT_CODE_MUTATION_EVENTS,
        planning_discussion: Iterable[str] = DEFAULT_PLANNING_EVENTS,
    ) -> None:
        self._code_mutation = frozenset(k.lower() for k in code_mutation)
        self._planning = frozenset(k.lower() for k in planning_discussion)
        overlap = self._code_mutation & self._planning
        if overlap:
            raise ValueError(f"Event kinds classified both ways: {sorted(overlap)}")

    def classify(self, event: TriggerEvent) -> str:
        kind = event.kind.lower()
        if kind in TRIGGER_KINDS:
            return kind
        if kind in self._code_mutation:
            return CODE_MUTATION
        if kind not in self._planning:
            logger.debug("Unknown event kind %r, treating as %s", event.kind, PLANNING_DISCUSSION)
        return PLANNING_DISCUSSION
