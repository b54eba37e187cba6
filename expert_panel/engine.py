"""Request control flow: mode -> context -> dispatch -> weights -> consensus -> publish."""

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from config.config_loader import AppConfig, ConsensusPolicy, EngineSettings, WeightingConfig
from expert_panel.breaker import BreakerBoard
from expert_panel.consensus import RESOLUTIONS, ConsensusResolver
from expert_panel.context import ContextBuilder, HistoryEntry, SessionHistory, StructuralAnalyzer, session_id_of
from expert_panel.dispatcher import Dispatcher
from expert_panel.errors import AllExpertsFailed, InvalidRequest
from expert_panel.events import EventBus
from expert_panel.knowledge import InMemoryPatternRepository
from expert_panel.models import AUTO, SINGULAR, Request
from expert_panel.modes import TRIGGER_KINDS, EventClassifier, TriggerEvent, select_mode
from expert_panel.providers.base import ReasoningProvider
from expert_panel.publisher import ConsensusOutcome, ResponsePublisher, SingularOutcome
from expert_panel.registry import ExpertRegistry
from expert_panel.relevance import RelevanceCache, RelevanceScorer, build_scorers
from expert_panel.weights import WeightCalculator

logger = logging.getLogger(__name__)

Outcome = ConsensusOutcome | SingularOutcome


@dataclass
class EngineMetrics:
    total_requests: int = 0
    completed: int = 0
    failed: int = 0
    threshold_misses: int = 0
    total_latency_ms: float = 0.0

    @property
    def average_latency_ms(self) -> float:
        if not self.completed:
            return 0.0
        return self.total_latency_ms / self.completed


class ExpertPanelEngine:
    """Runs one request through the expert panel in consensus or singular mode.

    The registry, weighting configuration and consensus policy are fixed at
    construction; a request may override the weighting strategy, which yields
    a per-request copy of the configuration.
    """

    def __init__(
        self,
        registry: ExpertRegistry,
        providers: Mapping[str, ReasoningProvider],
        *,
        settings: EngineSettings = EngineSettings(),
        weighting: WeightingConfig = WeightingConfig(),
        policy: ConsensusPolicy = ConsensusPolicy(),
        scorers: Mapping[str, RelevanceScorer] | None = None,
        context_builder: ContextBuilder | None = None,
        classifier: EventClassifier | None = None,
        breakers: BreakerBoard | None = None,
        history: SessionHistory | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings
        self.bus = bus or EventBus()
        self.history = history or SessionHistory(settings.history_limit)
        self.metrics = EngineMetrics()
        self._weighting = weighting
        self._classifier = classifier or EventClassifier()
        self._context_builder = context_builder or ContextBuilder(history=self.history)
        self._weights = WeightCalculator(scorers or {})
        self._resolver = ConsensusResolver(policy)
        self._publisher = ResponsePublisher(self.bus, registry)
        self._dispatcher = Dispatcher(
            providers,
            expert_timeout_sec=settings.expert_timeout_sec,
            max_concurrency=settings.max_concurrency,
            breakers=breakers,
        )

    def _validate(self, request: Request) -> None:
        if not request.prompt or not request.prompt.strip():
            raise InvalidRequest("Prompt must not be empty")
        if not 0.0 <= request.consensus_threshold <= 1.0:
            raise InvalidRequest(f"consensus_threshold must be in [0, 1], got {request.consensus_threshold}")
        if request.weighting_strategy is not None and request.weighting_strategy not in self._weighting.strategies:
            raise InvalidRequest(f"Unknown weighting strategy: {request.weighting_strategy}")
        if request.resolution not in RESOLUTIONS:
            raise InvalidRequest(f"Unknown resolution: {request.resolution}")

    def _trigger_kind(self, trigger: str | TriggerEvent | None) -> str | None:
        if trigger is None:
            return None
        if isinstance(trigger, str):
            if trigger in TRIGGER_KINDS:
                return trigger
            trigger = TriggerEvent(kind=trigger)
        return self._classifier.classify(trigger)

    def _weighting_for(self, request: Request) -> WeightingConfig:
        if request.weighting_strategy is None:
            return self._weighting
        return dataclasses.replace(self._weighting, strategy=request.weighting_strategy)

    async def handle(self, request: Request, trigger: str | TriggerEvent | None = None) -> Outcome:
        """Process one request.

        Args:
            request: The request to answer.
            trigger: Trigger kind or raw event; only consulted when the
                request asks for "auto" mode.

        Returns:
            ConsensusOutcome or SingularOutcome depending on the resolved mode.

        Raises:
            InvalidRequest: Before any expert is invoked.
            AllExpertsFailed: If no selected expert produced a usable response.
        """
        self.metrics.total_requests += 1
        mode: str | None = None
        try:
            self._validate(request)
            mode = select_mode(request.requested_mode, self._trigger_kind(trigger))
            experts = self.registry.select(request.required_capabilities)
            weighting = self._weighting_for(request)
        except InvalidRequest as exc:
            self.metrics.failed += 1
            logger.error("Rejected request %s: %s", request.id, exc)
            self._publisher.failed(request, mode, exc)
            raise

        if request.requested_mode == AUTO:
            logger.info("Request %s resolved to %s mode", request.id, mode)
        self._publisher.started(request, mode, [e.id for e in experts])

        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            context = self._context_builder.build(request)
            responses = await self._dispatcher.dispatch(context, experts, self.settings.deadline_sec(mode))
            if mode != SINGULAR:
                assignment = self._weights.compute(request, responses, self.registry, weighting)
                result = self._resolver.resolve(
                    request,
                    responses,
                    assignment,
                    self.registry,
                    omitted=[r for r in responses if r.failed],
                )
        except AllExpertsFailed as exc:
            self.metrics.failed += 1
            logger.error("Request %s failed: %s", request.id, exc)
            self._publisher.failed(request, mode, exc)
            raise
        except Exception as exc:
            self.metrics.failed += 1
            logger.error("Request %s failed unexpectedly: %s", request.id, exc)
            self._publisher.failed(request, mode, exc)
            raise

        latency_ms = (loop.time() - start) * 1000
        if mode == SINGULAR:
            outcome: Outcome = self._publisher.publish_singular(request, responses, latency_ms)
            entry = HistoryEntry(request.id, mode, _excerpt(request.prompt))
        else:
            outcome = self._publisher.publish_consensus(request, result, responses, latency_ms, assignment.strategy)
            if not result.threshold_met:
                self.metrics.threshold_misses += 1
            entry = HistoryEntry(request.id, mode, _excerpt(request.prompt), result.confidence)

        self.metrics.completed += 1
        self.metrics.total_latency_ms += latency_ms
        self.history.record(session_id_of(request), entry)
        return outcome


def _excerpt(text: str, max_len: int = 80) -> str:
    text = " ".join(text.split())
    return text if len(text) <= max_len else text[: max_len - 3] + "..."


def _optional_str(data: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise InvalidRequest(f"{key} must be a string, got {type(value).__name__}")
    return value


def request_from_mapping(data: Mapping[str, Any]) -> Request:
    """Build a Request from the camelCase input shape used by callers and the inbox.

    Raises:
        InvalidRequest: If a field is missing or has the wrong type.
    """
    prompt = data.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise InvalidRequest("prompt must be a non-empty string")

    request_id = data.get("id")
    if request_id is None:
        request_id = uuid.uuid4().hex[:12]
    elif isinstance(request_id, (str, int)) and not isinstance(request_id, bool):
        request_id = str(request_id)
    else:
        raise InvalidRequest(f"id must be a string, got {type(request_id).__name__}")

    try:
        threshold = float(data.get("consensusThreshold", 0.7))
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"consensusThreshold must be a number: {data.get('consensusThreshold')!r}") from exc

    capabilities = data.get("requiredCapabilities") or []
    if isinstance(capabilities, str):
        capabilities = [c.strip() for c in capabilities.split(",") if c.strip()]
    elif not isinstance(capabilities, (list, tuple, set, frozenset)):
        raise InvalidRequest("requiredCapabilities must be a list or a comma-separated string")
    if not all(isinstance(c, str) for c in capabilities):
        raise InvalidRequest("requiredCapabilities must contain strings")

    facts = data.get("structuralFacts")
    if facts is not None and not isinstance(facts, Mapping):
        raise InvalidRequest("structuralFacts must be a mapping")
    session = data.get("sessionContext") or {}
    if not isinstance(session, Mapping):
        raise InvalidRequest("sessionContext must be a mapping")

    return Request(
        id=request_id,
        prompt=prompt,
        structural_facts=dict(facts) if facts is not None else None,
        session_context=dict(session),
        requested_mode=_optional_str(data, "requestedMode", AUTO),
        consensus_threshold=threshold,
        required_capabilities=frozenset(capabilities),
        weighting_strategy=_optional_str(data, "weightingStrategy"),
        resolution=_optional_str(data, "resolution", "weighted"),
        source_text=_optional_str(data, "sourceText"),
    )


def build_engine(
    config: AppConfig,
    providers: Mapping[str, ReasoningProvider],
    *,
    analyzer: StructuralAnalyzer | None = None,
    bus: EventBus | None = None,
) -> ExpertPanelEngine:
    """Wire an engine from loaded configuration and instantiated providers."""
    registry = ExpertRegistry(config.experts)
    classifier = EventClassifier()
    if config.triggers.code_mutation or config.triggers.planning_discussion:
        classifier = EventClassifier(config.triggers.code_mutation, config.triggers.planning_discussion)
    history = SessionHistory(config.engine.history_limit)
    context_builder = ContextBuilder(
        analyzer=analyzer,
        patterns=InMemoryPatternRepository(config.patterns),
        history=history,
    )
    return ExpertPanelEngine(
        registry,
        providers,
        settings=config.engine,
        weighting=config.weighting,
        policy=config.consensus,
        scorers=build_scorers(config.vocabularies, RelevanceCache()),
        context_builder=context_builder,
        classifier=classifier,
        breakers=BreakerBoard(config.breaker) if config.breaker.enabled else None,
        history=history,
        bus=bus,
    )
