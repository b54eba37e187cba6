"""Pure dataclasses for the expert panel engine. No logic, no deps."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

CONSENSUS = "consensus"
SINGULAR = "singular"
AUTO = "auto"

CODE_MUTATION = "code-mutation"
PLANNING_DISCUSSION = "planning-discussion"

REQUEST_STARTED = "request-started"
REQUEST_COMPLETED = "request-completed"
REQUEST_FAILED = "request-failed"


@dataclass(frozen=True)
class Request:
    id: str
    prompt: str
    structural_facts: Mapping[str, Any] | None = None
    session_context: Mapping[str, Any] = field(default_factory=dict)
    requested_mode: str = AUTO             # "consensus", "singular", "auto"
    consensus_threshold: float = 0.7
    required_capabilities: frozenset[str] = frozenset()
    weighting_strategy: str | None = None  # overrides the configured strategy
    resolution: str = "weighted"           # "weighted", "majority" or "hybrid"
    source_text: str | None = None         # handed to the structural analyzer


@dataclass(frozen=True)
class ExpertDescriptor:
    id: str
    display_name: str
    capabilities: frozenset[str]
    default_weight: float
    domain: str = "general"   # vocabulary used for relevance scoring
    provider: str = "simulated"
    persona: str = ""


@dataclass
class ExpertResponse:
    expert_id: str
    text: str
    self_reported_confidence: float
    latency_ms: float
    produced_at: datetime
    failed: bool = False
    failure_reason: str | None = None


@dataclass
class WeightAssignment:
    weights: dict[str, float]              # registry order, sums to 1.0
    strategy: str                          # resolved strategy name
    relevance: dict[str, float] = field(default_factory=dict)

    def weight(self, expert_id: str) -> float:
        return self.weights.get(expert_id, 0.0)


@dataclass(frozen=True)
class ContributingExpert:
    expert_id: str
    weight: float
    confidence: float


@dataclass(frozen=True)
class ConsensusResult:
    final_text: str
    confidence: float
    method: str                            # "weighted", "majority", "hybrid", "single-expert-fallback"
    contributing_experts: tuple[ContributingExpert, ...]
    reasoning: str
    threshold: float
    threshold_met: bool
    disagreements: tuple[str, ...] = ()


@dataclass(frozen=True)
class Omission:
    expert_id: str
    failure_reason: str


@dataclass(frozen=True)
class LifecycleEvent:
    kind: str                              # "request-started", "request-completed", "request-failed"
    request_id: str
    mode: str | None
    at: datetime
    detail: Mapping[str, Any] = field(default_factory=dict)
