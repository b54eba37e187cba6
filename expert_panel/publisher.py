"""Final outcome shapes and lifecycle publication for both modes."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from expert_panel.events import EventBus
from expert_panel.models import (
    CONSENSUS,
    REQUEST_COMPLETED,
    REQUEST_FAILED,
    REQUEST_STARTED,
    SINGULAR,
    ConsensusResult,
    ExpertResponse,
    Omission,
    Request,
)
from expert_panel.registry import ExpertRegistry

logger = logging.getLogger(__name__)


def _omissions(responses: Sequence[ExpertResponse]) -> tuple[Omission, ...]:
    return tuple(
        Omission(expert_id=r.expert_id, failure_reason=r.failure_reason or "unknown")
        for r in responses
        if r.failed
    )


def _omissions_dict(omitted: Sequence[Omission]) -> list[dict[str, str]]:
    return [{"expertId": o.expert_id, "failureReason": o.failure_reason} for o in omitted]


@dataclass(frozen=True)
class ConsensusOutcome:
    request_id: str
    prompt: str
    result: ConsensusResult
    omitted: tuple[Omission, ...]
    latency_ms: float
    strategy: str = ""

    mode = CONSENSUS

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "finalText": self.result.final_text,
            "confidence": self.result.confidence,
            "method": self.result.method,
            "contributingExperts": [
                {"expertId": c.expert_id, "weight": c.weight, "confidence": c.confidence}
                for c in self.result.contributing_experts
            ],
            "reasoning": self.result.reasoning,
            "latencyMs": self.latency_ms,
            "thresholdMet": self.result.threshold_met,
            "omittedExperts": _omissions_dict(self.omitted),
        }


@dataclass(frozen=True)
class LabeledResponse:
    expert_id: str
    display_name: str
    text: str
    confidence: float
    latency_ms: float


@dataclass(frozen=True)
class SingularOutcome:
    request_id: str
    prompt: str
    responses: tuple[LabeledResponse, ...]
    omitted: tuple[Omission, ...]
    latency_ms: float

    mode = SINGULAR

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "responses": [
                {
                    "expertId": r.expert_id,
                    "displayName": r.display_name,
                    "text": r.text,
                    "confidence": r.confidence,
                    "latencyMs": r.latency_ms,
                }
                for r in self.responses
            ],
            "omittedExperts": _omissions_dict(self.omitted),
            "latencyMs": self.latency_ms,
        }


class ResponsePublisher:
    """Builds the caller-facing outcome and announces the request lifecycle on the bus."""

    def __init__(self, bus: EventBus, registry: ExpertRegistry) -> None:
        self._bus = bus
        self._registry = registry

    def started(self, request: Request, mode: str, expert_ids: Sequence[str]) -> None:
        self._bus.emit(REQUEST_STARTED, request.id, mode, experts=list(expert_ids))

    def publish_consensus(
        self,
        request: Request,
        result: ConsensusResult,
        responses: Sequence[ExpertResponse],
        latency_ms: float,
        strategy: str = "",
    ) -> ConsensusOutcome:
        outcome = ConsensusOutcome(
            request_id=request.id,
            prompt=request.prompt,
            result=result,
            omitted=_omissions(responses),
            latency_ms=latency_ms,
            strategy=strategy,
        )
        self._bus.emit(
            REQUEST_COMPLETED,
            request.id,
            CONSENSUS,
            confidence=result.confidence,
            method=result.method,
            threshold_met=result.threshold_met,
            omitted=[o.expert_id for o in outcome.omitted],
            latency_ms=latency_ms,
        )
        return outcome

    def publish_singular(
        self,
        request: Request,
        responses: Sequence[ExpertResponse],
        latency_ms: float,
    ) -> SingularOutcome:
        labeled = tuple(
            LabeledResponse(
                expert_id=r.expert_id,
                display_name=self._registry.get(r.expert_id).display_name,
                text=r.text,
                confidence=r.self_reported_confidence,
                latency_ms=r.latency_ms,
            )
            for r in responses
            if not r.failed
        )
        outcome = SingularOutcome(
            request_id=request.id,
            prompt=request.prompt,
            responses=labeled,
            omitted=_omissions(responses),
            latency_ms=latency_ms,
        )
        self._bus.emit(
            REQUEST_COMPLETED,
            request.id,
            SINGULAR,
            responses=len(labeled),
            omitted=[o.expert_id for o in outcome.omitted],
            latency_ms=latency_ms,
        )
        return outcome

    def failed(self, request: Request, mode: str | None, error: Exception) -> None:
        self._bus.emit(REQUEST_FAILED, request.id, mode, error=str(error), error_type=type(error).__name__)
