"""Shared pytest fixtures."""

import asyncio
from datetime import datetime, timezone

import pytest

from config.config_loader import EngineSettings, ModelConfig, PromptsConfig
from expert_panel.context import RequestContext
from expert_panel.engine import ExpertPanelEngine
from expert_panel.models import ExpertDescriptor, ExpertResponse, Request
from expert_panel.providers.base import ProviderReply, ReasoningProvider
from expert_panel.registry import ExpertRegistry
from expert_panel.relevance import build_scorers

VOCABULARIES = {
    "workflow": ["workflow", "process", "automation", "efficiency", "optimiz", "pipeline", "deploy", "performance"],
    "quality": ["quality", "clean", "pattern", "architecture", "design", "test", "refactor", "review"],
}


def make_response(
    expert_id: str,
    confidence: float = 0.8,
    text: str | None = None,
    *,
    failed: bool = False,
    reason: str | None = None,
) -> ExpertResponse:
    return ExpertResponse(
        expert_id=expert_id,
        text="" if failed else (text if text is not None else f"- Review the {expert_id} findings."),
        self_reported_confidence=0.0 if failed else confidence,
        latency_ms=10.0,
        produced_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        failed=failed,
        failure_reason=reason if failed else None,
    )


def make_expert(expert_id: str, *capabilities: str, weight: float = 1.0, domain: str = "general",
                provider: str = "scripted") -> ExpertDescriptor:
    return ExpertDescriptor(
        id=expert_id,
        display_name=expert_id.title(),
        capabilities=frozenset(capabilities or {"analysis"}),
        default_weight=weight,
        domain=domain,
        provider=provider,
    )


class ScriptedProvider(ReasoningProvider):
    """Test double: per-expert canned replies, delays and exceptions."""

    def __init__(
        self,
        replies: dict | None = None,
        delays: dict[str, float] | None = None,
        default_confidence: float = 0.8,
    ) -> None:
        super().__init__(
            ModelConfig(
                name="scripted",
                sdk="test",
                model="scripted-1",
                api_key_env="",
                timeout_sec=30,
                max_tokens=256,
            ),
            PromptsConfig(expert="{prompt}"),
        )
        self.replies = dict(replies or {})
        self.delays = dict(delays or {})
        self.default_confidence = default_confidence
        self.calls: list[str] = []
        self.cancelled: list[str] = []
        self.contexts: list[RequestContext] = []
        self.active = 0
        self.peak = 0

    async def complete(self, prompt: str, timeout_sec: float) -> str:
        return "OK"

    async def invoke(self, expert: ExpertDescriptor, context: RequestContext, deadline: float) -> ProviderReply:
        self.calls.append(expert.id)
        self.contexts.append(context)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            delay = self.delays.get(expert.id, 0.0)
            if delay:
                await asyncio.sleep(delay)
            reply = self.replies.get(expert.id)
            if isinstance(reply, BaseException):
                raise reply
            if isinstance(reply, ProviderReply):
                return reply
            if reply is None:
                return ProviderReply(f"- Review the {expert.id} findings.", self.default_confidence)
            text, confidence = reply
            return ProviderReply(text=text, confidence=confidence)
        except asyncio.CancelledError:
            self.cancelled.append(expert.id)
            raise
        finally:
            self.active -= 1


@pytest.fixture
def experts() -> list[ExpertDescriptor]:
    return [
        make_expert("alpha", "code_generation", "testing", domain="quality"),
        make_expert("beta", "automation", domain="workflow"),
        make_expert("gamma", "review", "testing", domain="quality"),
    ]


@pytest.fixture
def registry(experts) -> ExpertRegistry:
    return ExpertRegistry(experts)


@pytest.fixture
def scorers():
    return build_scorers(VOCABULARIES)


@pytest.fixture
def sample_request() -> Request:
    return Request(id="req-1", prompt="How should we refactor the session cache?")


@pytest.fixture
def sample_context(sample_request) -> RequestContext:
    return RequestContext(request=sample_request)


@pytest.fixture
def fast_settings() -> EngineSettings:
    return EngineSettings(expert_timeout_ms=200, consensus_deadline_ms=400, singular_deadline_ms=250)


@pytest.fixture
def make_engine(registry, scorers, fast_settings):
    """Factory: engine over the 3-expert registry backed by one provider."""

    def _make(provider: ReasoningProvider, experts: list[ExpertDescriptor] | None = None,
              **kwargs) -> ExpertPanelEngine:
        reg = ExpertRegistry(experts) if experts is not None else registry
        kwargs.setdefault("settings", fast_settings)
        kwargs.setdefault("scorers", scorers)
        return ExpertPanelEngine(reg, {"scripted": provider}, **kwargs)

    return _make
