"""Consensus resolution: weighted expert answers -> one ranked, synthesized result.

Confidence policy
-----------------
The aggregate starts from the weight-weighted mean of self-reported
confidences. With more than one contributor two bounded bonuses apply: a
fixed breadth bonus, and an agreement bonus that shrinks as the variance of
the individual confidences grows. The result is then held at or above the
lowest individual confidence and at or below the configured cap (0.98 by
default). The bonus sizes are tunable policy (see ConsensusPolicy), not
constants anything else relies on.
"""

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from statistics import fmean, pvariance

from config.config_loader import ConsensusPolicy
from expert_panel.models import (
    ConsensusResult,
    ContributingExpert,
    ExpertResponse,
    Request,
    WeightAssignment,
)
from expert_panel.registry import ExpertRegistry
from expert_panel.relevance import tokenize

logger = logging.getLogger(__name__)

WEIGHTED = "weighted"
MAJORITY = "majority"
HYBRID = "hybrid"
SINGLE_EXPERT_FALLBACK = "single-expert-fallback"

RESOLUTIONS = {WEIGHTED, MAJORITY, HYBRID}

_BULLET_RE = re.compile(r"^\s*(?:[-*+•]|\d+[.)])\s+(.*\S)\s*$")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

_NEGATIONS = {"avoid", "never", "not", "no", "don", "dont", "shouldn", "mustn", "stop", "against", "drop"}
_POLARITY_VERBS = {"use", "adopt", "prefer", "add", "introduce", "apply", "keep", "do", "should", "must", "always"}
_STOPWORDS = {
    "a", "an", "the", "to", "for", "of", "in", "on", "and", "or", "with", "this", "that", "it", "is", "be",
    "t", "s", "your", "our", "we", "you", "any", "all",
}


@dataclass
class _Recommendation:
    text: str
    subject: frozenset[str]
    negative: bool
    experts: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ConfidenceBreakdown:
    base: float
    breadth_bonus: float
    agreement_bonus: float
    value: float


def jaccard(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def extract_recommendations(text: str) -> list[str]:
    """Bullet lines of an answer, or its first three substantial sentences for prose."""
    bullets = [m.group(1).strip() for line in text.splitlines() if (m := _BULLET_RE.match(line))]
    if bullets:
        return bullets
    sentences = [s.strip() for s in _SENTENCE_SPLIT_RE.split(text.replace("\n", " "))]
    return [s for s in sentences if len(s) > 10][:3]


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text.replace("**", "").replace("`", "")).strip().rstrip(".;:!")


def _polarity(text: str) -> tuple[frozenset[str], bool]:
    tokens = tokenize(text)
    negative = any(tok in _NEGATIONS for tok in tokens)
    subject = frozenset(
        tok for tok in tokens if tok not in _NEGATIONS and tok not in _POLARITY_VERBS and tok not in _STOPWORDS
    )
    return subject, negative


def aggregate_confidence(
    confidences: Sequence[float],
    weights: Sequence[float],
    policy: ConsensusPolicy,
    base: float | None = None,
) -> ConfidenceBreakdown:
    """Apply the confidence policy to aligned confidence and weight sequences."""
    if base is None:
        base = sum(w * c for w, c in zip(weights, confidences))

    breadth = agreement = 0.0
    if len(confidences) > 1:
        breadth = policy.breadth_bonus
        agreement = policy.agreement_bonus / (1.0 + pvariance(confidences) * policy.agreement_sensitivity)

    value = base + breadth + agreement
    value = max(value, min(confidences))
    value = min(value, policy.confidence_cap)
    value = max(0.0, value)
    return ConfidenceBreakdown(base=base, breadth_bonus=breadth, agreement_bonus=agreement, value=value)


def group_similar(responses: Sequence[ExpertResponse], threshold: float) -> list[list[ExpertResponse]]:
    """Greedy grouping by word-set overlap with each group's first member, largest group first."""
    groups: list[tuple[frozenset[str], list[ExpertResponse]]] = []
    for response in responses:
        words = frozenset(tokenize(response.text))
        for representative, members in groups:
            if jaccard(words, representative) >= threshold:
                members.append(response)
                break
        else:
            groups.append((words, [response]))
    ordered = [members for _, members in groups]
    # stable sort keeps first-seen (highest weight) groups ahead on ties
    return sorted(ordered, key=len, reverse=True)


class ConsensusResolver:
    """Combines weighted expert responses into a single ConsensusResult."""

    def __init__(self, policy: ConsensusPolicy) -> None:
        self._policy = policy

    def resolve(
        self,
        request: Request,
        responses: Sequence[ExpertResponse],
        weights: WeightAssignment,
        registry: ExpertRegistry,
        omitted: Sequence[ExpertResponse] = (),
    ) -> ConsensusResult:
        """Resolve non-failed responses into one result.

        Raises:
            ValueError: If there is no successful response to resolve.
        """
        contributors = sorted(
            (r for r in responses if not r.failed),
            key=lambda r: (-weights.weight(r.expert_id), registry.order(r.expert_id)),
        )
        if not contributors:
            raise ValueError("Cannot resolve consensus without successful responses")

        confidences = [r.self_reported_confidence for r in contributors]
        weight_values = [weights.weight(r.expert_id) for r in contributors]

        majority_note = ""
        if len(contributors) == 1:
            method = SINGLE_EXPERT_FALLBACK
            only = confidences[0]
            capped = max(0.0, min(only, self._policy.confidence_cap))
            breakdown = ConfidenceBreakdown(base=only, breadth_bonus=0.0, agreement_bonus=0.0, value=capped)
        elif request.resolution in (HYBRID, MAJORITY):
            method = request.resolution
            groups = group_similar(contributors, self._policy.similarity_threshold)
            majority = groups[0]
            ratio = len(majority) / len(contributors)
            majority_conf = ratio * fmean(r.self_reported_confidence for r in majority)
            weighted_base = sum(w * c for w, c in zip(weight_values, confidences))
            base = majority_conf if method == MAJORITY else (weighted_base + majority_conf) / 2
            breakdown = aggregate_confidence(confidences, weight_values, self._policy, base=base)
            majority_note = (
                f"Majority group: {', '.join(r.expert_id for r in majority)} "
                f"({len(majority)}/{len(contributors)} similar answers, majority confidence {majority_conf:.3f})."
            )
        else:
            method = WEIGHTED
            breakdown = aggregate_confidence(confidences, weight_values, self._policy)

        strategy_text, disagreements = self._strategy_section(contributors, registry)
        final_text = self._compose(contributors, weights, registry, strategy_text)

        threshold_met = breakdown.value + 1e-9 >= request.consensus_threshold
        if not threshold_met:
            logger.warning(
                "Consensus for %s below threshold: %.3f < %.2f",
                request.id,
                breakdown.value,
                request.consensus_threshold,
            )

        reasoning = self._reasoning(
            request, method, weights, contributors, breakdown, threshold_met, disagreements, omitted, majority_note
        )

        return ConsensusResult(
            final_text=final_text,
            confidence=breakdown.value,
            method=method,
            contributing_experts=tuple(
                ContributingExpert(expert_id=r.expert_id, weight=weights.weight(r.expert_id),
                                   confidence=r.self_reported_confidence)
                for r in contributors
            ),
            reasoning=reasoning,
            threshold=request.consensus_threshold,
            threshold_met=threshold_met,
            disagreements=tuple(disagreements),
        )

    def _compose(
        self,
        contributors: Sequence[ExpertResponse],
        weights: WeightAssignment,
        registry: ExpertRegistry,
        strategy_text: str,
    ) -> str:
        parts = ["# Expert Panel Consensus", ""]
        for response in contributors:
            expert = registry.get(response.expert_id)
            parts += [
                f"## {expert.display_name}",
                f"*Weight {weights.weight(response.expert_id):.0%} | "
                f"Confidence {response.self_reported_confidence:.0%}*",
                "",
                response.text.strip(),
                "",
            ]
        parts.append(strategy_text)
        return "\n".join(parts).rstrip() + "\n"

    def _strategy_section(
        self,
        contributors: Sequence[ExpertResponse],
        registry: ExpertRegistry,
    ) -> tuple[str, list[str]]:
        threshold = self._policy.similarity_threshold
        groups: list[_Recommendation] = []
        for response in contributors:
            for text in extract_recommendations(response.text):
                subject, negative = _polarity(text)
                if not subject:
                    continue
                for group in groups:
                    if group.negative == negative and jaccard(group.subject, subject) >= threshold:
                        if response.expert_id not in group.experts:
                            group.experts.append(response.expert_id)
                        break
                else:
                    groups.append(_Recommendation(_clean(text), subject, negative, [response.expert_id]))

        def names(expert_ids: Sequence[str]) -> str:
            return ", ".join(registry.get(eid).display_name for eid in expert_ids)

        conflicted: set[int] = set()
        disagreements: list[str] = []
        for i, first in enumerate(groups):
            for j in range(i + 1, len(groups)):
                second = groups[j]
                if first.negative == second.negative or set(first.experts) == set(second.experts):
                    continue
                if jaccard(first.subject, second.subject) < threshold:
                    continue
                conflicted.update((i, j))
                pro, con = (second, first) if first.negative else (first, second)
                disagreements.append(
                    f'{names(pro.experts)} recommend "{pro.text}" while {names(con.experts)} advise "{con.text}"'
                )

        agreed = [g for i, g in enumerate(groups) if i not in conflicted and len(g.experts) > 1]
        single = [g for i, g in enumerate(groups) if i not in conflicted and len(g.experts) == 1]

        lines = ["## Implementation Strategy", ""]
        if not groups:
            lines += ["No discrete recommendations could be extracted; see the expert sections above.", ""]
        if agreed:
            lines += ["### Agreed Recommendations"]
            lines += [f"- {g.text} ({names(g.experts)})" for g in agreed]
            lines.append("")
        if single:
            lines += ["### Additional Recommendations"]
            lines += [f"- {g.text} ({names(g.experts)})" for g in single]
            lines.append("")
        if disagreements:
            lines += ["### Disagreements"]
            lines += [f"- **Disagreement:** {d}" for d in disagreements]
            lines.append("")
        return "\n".join(lines), disagreements

    def _reasoning(
        self,
        request: Request,
        method: str,
        weights: WeightAssignment,
        contributors: Sequence[ExpertResponse],
        breakdown: ConfidenceBreakdown,
        threshold_met: bool,
        disagreements: Sequence[str],
        omitted: Sequence[ExpertResponse],
        majority_note: str,
    ) -> str:
        total = len(contributors) + len(omitted)
        lines = [
            f"Method: {method}, {len(contributors)} of {total} experts contributing, "
            f"{weights.strategy} weighting strategy.",
            "Weights: " + ", ".join(f"{r.expert_id} {weights.weight(r.expert_id):.0%}" for r in contributors) + ".",
        ]
        if majority_note:
            lines.append(majority_note)
        if method == SINGLE_EXPERT_FALLBACK:
            lines.append(f"Aggregate confidence {breakdown.value:.3f} taken from the only successful expert.")
        else:
            lines.append(
                f"Aggregate confidence {breakdown.value:.3f} (base {breakdown.base:.3f} "
                f"+ breadth bonus {breakdown.breadth_bonus:.3f} + agreement bonus {breakdown.agreement_bonus:.3f}, "
                f"cap {self._policy.confidence_cap:.2f})."
            )

        if threshold_met:
            lines.append(f"Threshold {request.consensus_threshold:.2f} met.")
        else:
            gap = request.consensus_threshold - breakdown.value
            lines.append(
                f"Threshold {request.consensus_threshold:.2f} NOT met: confidence {breakdown.value:.3f} "
                f"is {gap:.3f} below it. Surface with caution, retry, or request human review."
            )

        if disagreements:
            lines.append(f"{len(disagreements)} disagreement(s) flagged in the implementation strategy.")
        if omitted:
            lines.append(
                "Omitted experts: " + ", ".join(f"{r.expert_id} ({r.failure_reason})" for r in omitted) + "."
            )
        return "\n".join(lines)
