"""Dynamic per-request expert weights.

Each successful expert gets a raw score

    raw = default_weight * (base + relevance_coeff * relevance + confidence_coeff * confidence)

where the coefficients come from the selected strategy, then raw scores are
renormalised to sum to 1.0. Weights depend on request content and are never
cached across requests.
"""

import logging
from collections.abc import Mapping, Sequence
from statistics import fmean

from config.config_loader import WeightingConfig
from expert_panel.errors import InvalidRequest
from expert_panel.models import ExpertDescriptor, ExpertResponse, Request, WeightAssignment
from expert_panel.registry import ExpertRegistry
from expert_panel.relevance import RelevanceScorer, dominant_domain

logger = logging.getLogger(__name__)

ADAPTIVE = "adaptive"
BALANCED = "balanced"


def resolve_strategy(
    prompt: str,
    config: WeightingConfig,
    scorers: Mapping[str, RelevanceScorer],
) -> str:
    """Concrete strategy for a request; "adaptive" picks by dominant request vocabulary."""
    if config.strategy != ADAPTIVE:
        if config.strategy not in config.coefficients:
            raise InvalidRequest(f"Unknown weighting strategy: {config.strategy}")
        return config.strategy

    candidates = {d: scorers[d] for d in config.adaptive_map if d in scorers}
    domain = dominant_domain(prompt, candidates)
    if domain is None:
        return BALANCED
    return config.adaptive_map[domain]


class WeightCalculator:
    """Scores relevance and turns it into a WeightAssignment for one request."""

    def __init__(self, scorers: Mapping[str, RelevanceScorer]) -> None:
        self._scorers = dict(scorers)

    def relevance(self, expert: ExpertDescriptor, request: Request, response: ExpertResponse) -> float:
        """Mean of the expert-domain score over the request prompt and the response text."""
        scorer = self._scorers.get(expert.domain)
        if scorer is None:
            return 0.0
        return fmean([scorer.score(request.prompt), scorer.score(response.text)])

    def compute(
        self,
        request: Request,
        responses: Sequence[ExpertResponse],
        registry: ExpertRegistry,
        config: WeightingConfig,
    ) -> WeightAssignment:
        """Weights for the non-failed responses, in registry order, summing to 1.0.

        Raises:
            ValueError: If no response succeeded.
        """
        usable = sorted(
            (r for r in responses if not r.failed),
            key=lambda r: registry.order(r.expert_id),
        )
        if not usable:
            raise ValueError("Cannot weight an empty set of successful responses")

        strategy = resolve_strategy(request.prompt, config, self._scorers)
        coeff = config.coefficients[strategy]

        relevance = {
            r.expert_id: self.relevance(registry.get(r.expert_id), request, r)
            for r in usable
        }

        if len(usable) == 1:
            only = usable[0].expert_id
            return WeightAssignment(weights={only: 1.0}, strategy=strategy, relevance=relevance)

        raw: dict[str, float] = {}
        for r in usable:
            expert = registry.get(r.expert_id)
            raw[r.expert_id] = max(0.0, expert.default_weight * (
                coeff.base
                + coeff.relevance * relevance[r.expert_id]
                + coeff.confidence * r.self_reported_confidence
            ))

        total = sum(raw.values())
        if total <= 0.0:
            weights = {eid: 1.0 / len(raw) for eid in raw}
        else:
            weights = {eid: score / total for eid, score in raw.items()}

        logger.debug(
            "Weights (%s): %s",
            strategy,
            ", ".join(f"{eid}={w:.3f}" for eid, w in weights.items()),
        )
        return WeightAssignment(weights=weights, strategy=strategy, relevance=relevance)
