"""Tests for expert_panel/consensus.py: aggregation, synthesis and threshold reporting."""

from statistics import fmean

import pytest

from config.config_loader import ConsensusPolicy
from expert_panel.consensus import (
    HYBRID,
    MAJORITY,
    SINGLE_EXPERT_FALLBACK,
    WEIGHTED,
    ConsensusResolver,
    aggregate_confidence,
    extract_recommendations,
    group_similar,
)
from expert_panel.models import Request, WeightAssignment
from expert_panel.registry import ExpertRegistry

from tests.conftest import make_expert, make_response


@pytest.fixture
def resolver() -> ConsensusResolver:
    return ConsensusResolver(ConsensusPolicy())


def _equal_weights(*expert_ids: str) -> WeightAssignment:
    return WeightAssignment(weights={eid: 1.0 / len(expert_ids) for eid in expert_ids}, strategy="balanced")


def _request(threshold: float = 0.7, resolution: str = "weighted") -> Request:
    return Request(id="r1", prompt="How should we cache sessions?", consensus_threshold=threshold,
                   resolution=resolution)


@pytest.fixture
def five_registry() -> ExpertRegistry:
    return ExpertRegistry([make_expert(f"e{i}", weight=0.14) for i in range(5)])


def test_five_agreeing_experts_weighted(resolver, five_registry):
    confidences = [0.85, 0.90, 0.80, 0.92, 0.87]
    responses = [make_response(f"e{i}", c) for i, c in enumerate(confidences)]
    result = resolver.resolve(_request(), responses, _equal_weights(*[f"e{i}" for i in range(5)]), five_registry)

    assert result.method == WEIGHTED
    assert len(result.contributing_experts) == 5
    mean = fmean(confidences)
    policy = ConsensusPolicy()
    assert mean < result.confidence <= mean + policy.breadth_bonus + policy.agreement_bonus
    assert result.threshold_met is True


def test_confidence_is_capped(resolver, registry):
    responses = [make_response(eid, 0.97) for eid in ("alpha", "beta", "gamma")]
    result = resolver.resolve(_request(), responses, _equal_weights("alpha", "beta", "gamma"), registry)
    assert result.confidence == pytest.approx(0.98)


def test_threshold_miss_is_reported_not_raised(resolver, registry):
    responses = [make_response("alpha", 0.81)]
    result = resolver.resolve(_request(threshold=0.95), responses, WeightAssignment({"alpha": 1.0}, "balanced"),
                              registry)
    assert result.confidence == pytest.approx(0.81)
    assert result.threshold_met is False
    assert "NOT met" in result.reasoning
    assert "confidence 0.810 is 0.140 below" in result.reasoning


def test_narrow_threshold_miss_shows_the_gap(resolver, registry):
    responses = [make_response("alpha", 0.948)]
    result = resolver.resolve(_request(threshold=0.95), responses, WeightAssignment({"alpha": 1.0}, "balanced"),
                              registry)
    assert result.threshold_met is False
    assert "NOT met: confidence 0.948 is 0.002 below it" in result.reasoning


def test_threshold_met_is_stated(resolver, registry):
    responses = [make_response("alpha", 0.9), make_response("beta", 0.88)]
    result = resolver.resolve(_request(), responses, _equal_weights("alpha", "beta"), registry)
    assert result.threshold_met is True
    assert "Threshold 0.70 met." in result.reasoning


def test_single_expert_fallback(resolver, registry):
    responses = [make_response("alpha", 0.99), make_response("beta", failed=True, reason="timeout")]
    result = resolver.resolve(
        _request(),
        responses,
        WeightAssignment({"alpha": 1.0}, "balanced"),
        registry,
        omitted=[responses[1]],
    )
    assert result.method == SINGLE_EXPERT_FALLBACK
    assert result.confidence == pytest.approx(0.98)
    assert [c.expert_id for c in result.contributing_experts] == ["alpha"]
    assert "Omitted experts: beta (timeout)." in result.reasoning


def test_no_successful_response_raises(resolver, registry):
    with pytest.raises(ValueError):
        resolver.resolve(_request(), [make_response("alpha", failed=True, reason="timeout")],
                         WeightAssignment({}, "balanced"), registry)


def test_confidence_never_below_minimum_individual(resolver, registry):
    responses = [
        make_response("alpha", 0.6, "- Shard the session store by tenant."),
        make_response("beta", 0.7, "- Put a read-through cache in front of billing."),
        make_response("gamma", 0.65, "- Rewrite the login screen in plain HTML."),
    ]
    result = resolver.resolve(_request(resolution=MAJORITY), responses, _equal_weights("alpha", "beta", "gamma"),
                              registry)
    assert result.method == MAJORITY
    assert result.confidence >= 0.6


def test_confidence_non_decreasing_with_agreeing_experts(resolver):
    ids = ["a", "b", "c", "d"]
    registry = ExpertRegistry([make_expert(eid) for eid in ids])
    previous = 0.0
    for n in range(1, len(ids) + 1):
        chosen = ids[:n]
        responses = [make_response(eid, 0.8, "- Add a cache.") for eid in chosen]
        result = resolver.resolve(_request(), responses, _equal_weights(*chosen), registry)
        assert result.confidence >= previous - 1e-9
        previous = result.confidence


def test_contributors_ordered_by_weight_then_registry(resolver, registry):
    responses = [make_response(eid, 0.8, f"- Point from {eid}.") for eid in ("alpha", "beta", "gamma")]
    weights = WeightAssignment({"alpha": 0.25, "beta": 0.5, "gamma": 0.25}, "balanced")
    result = resolver.resolve(_request(), responses, weights, registry)

    assert [c.expert_id for c in result.contributing_experts] == ["beta", "alpha", "gamma"]
    text = result.final_text
    assert text.index("## Beta") < text.index("## Alpha") < text.index("## Gamma")
    assert "*Weight 50% | Confidence 80%*" in text


def test_agreed_recommendations_are_merged(resolver, registry):
    responses = [
        make_response("alpha", 0.9, "Approach:\n- Write tests alongside the change.\n- Keep functions small."),
        make_response("beta", 0.8, "- Automate the release pipeline."),
        make_response("gamma", 0.85, "- **Write tests** alongside the change"),
    ]
    result = resolver.resolve(_request(), responses, _equal_weights("alpha", "beta", "gamma"), registry)
    text = result.final_text

    assert "## Implementation Strategy" in text
    assert "### Agreed Recommendations\n- Write tests alongside the change (Alpha, Gamma)" in text
    assert "### Additional Recommendations" in text
    assert "- Automate the release pipeline (Beta)" in text
    assert result.disagreements == ()


def test_contradictions_are_flagged(resolver, registry):
    responses = [
        make_response("alpha", 0.9, "- Use a global cache for sessions."),
        make_response("beta", 0.8, "- Avoid a global cache for sessions."),
    ]
    result = resolver.resolve(_request(), responses, _equal_weights("alpha", "beta"), registry)

    assert len(result.disagreements) == 1
    assert 'Alpha recommend "Use a global cache for sessions"' in result.disagreements[0]
    assert 'Beta advise "Avoid a global cache for sessions"' in result.disagreements[0]
    assert "### Disagreements" in result.final_text
    assert "**Disagreement:**" in result.final_text
    assert "### Agreed Recommendations" not in result.final_text
    assert "1 disagreement(s) flagged" in result.reasoning


def test_negated_contractions_count_as_opposite(resolver, registry):
    responses = [
        make_response("alpha", 0.9, "- Adopt feature flags for the rollout."),
        make_response("gamma", 0.8, "- Don't adopt feature flags for the rollout."),
    ]
    result = resolver.resolve(_request(), responses, _equal_weights("alpha", "gamma"), registry)
    assert len(result.disagreements) == 1


def test_prose_answers_use_leading_sentences(resolver, registry):
    responses = [
        make_response("alpha", 0.9, "Split the cache by tenant. It keeps eviction fair. Ok."),
        make_response("beta", 0.8, "- Measure hit rates first."),
    ]
    result = resolver.resolve(_request(), responses, _equal_weights("alpha", "beta"), registry)
    assert "- Split the cache by tenant (Alpha)" in result.final_text
    assert "- Measure hit rates first (Beta)" in result.final_text


def test_no_recommendations_is_stated(resolver, registry):
    responses = [make_response("alpha", 0.9, "Yes."), make_response("beta", 0.8, "No.")]
    result = resolver.resolve(_request(), responses, _equal_weights("alpha", "beta"), registry)
    assert "No discrete recommendations could be extracted" in result.final_text


def test_hybrid_resolution(resolver, registry):
    same = "- Put a read-through cache in front of the session store."
    responses = [
        make_response("alpha", 0.8, same),
        make_response("beta", 0.6, "- Rewrite the login screen in plain HTML with no scripts."),
        make_response("gamma", 0.8, same),
    ]
    result = resolver.resolve(_request(resolution=HYBRID), responses, _equal_weights("alpha", "beta", "gamma"),
                              registry)
    assert result.method == HYBRID
    assert "Majority group: alpha, gamma (2/3 similar answers" in result.reasoning
    weighted_base = (0.8 + 0.6 + 0.8) / 3
    majority = (2 / 3) * 0.8
    assert result.confidence > (weighted_base + majority) / 2
    assert result.confidence < weighted_base + 0.08


def test_resolution_is_deterministic(resolver, registry):
    responses = [
        make_response("alpha", 0.9, "- Use a global cache for sessions."),
        make_response("beta", 0.7, "- Avoid a global cache for sessions."),
        make_response("gamma", 0.8, "- Write tests alongside the change."),
    ]
    weights = _equal_weights("alpha", "beta", "gamma")
    assert resolver.resolve(_request(), responses, weights, registry) == resolver.resolve(
        _request(), responses, weights, registry
    )


def test_aggregate_confidence_breakdown():
    policy = ConsensusPolicy()
    breakdown = aggregate_confidence([0.8, 0.8], [0.5, 0.5], policy)
    assert breakdown.base == pytest.approx(0.8)
    assert breakdown.breadth_bonus == pytest.approx(0.05)
    assert breakdown.agreement_bonus == pytest.approx(0.03)
    assert breakdown.value == pytest.approx(0.88)


def test_agreement_bonus_shrinks_with_variance():
    policy = ConsensusPolicy()
    tight = aggregate_confidence([0.8, 0.8], [0.5, 0.5], policy)
    loose = aggregate_confidence([0.6, 1.0], [0.5, 0.5], policy)
    assert loose.agreement_bonus < tight.agreement_bonus


def test_bonuses_are_policy():
    policy = ConsensusPolicy(breadth_bonus=0.0, agreement_bonus=0.0)
    assert aggregate_confidence([0.7, 0.9], [0.5, 0.5], policy).value == pytest.approx(0.8)


def test_extract_recommendations():
    assert extract_recommendations("Intro\n- one thing\n* another\n1. third") == ["one thing", "another", "third"]
    prose = "The cache layer should be split. It also needs metrics. Ok. Fourth sentence here. Fifth one too."
    assert extract_recommendations(prose) == [
        "The cache layer should be split.",
        "It also needs metrics.",
        "Fourth sentence here.",
    ]


def test_group_similar_puts_largest_group_first():
    a = make_response("a", text="cache the session store")
    b = make_response("b", text="rewrite the login page")
    c = make_response("c", text="cache the session store")
    groups = group_similar([a, b, c], 0.7)
    assert [[r.expert_id for r in g] for g in groups] == [["a", "c"], ["b"]]
