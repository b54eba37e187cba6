"""Unit tests for expert_panel/providers: no real API calls."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from config.config_loader import ModelConfig, PromptsConfig
from expert_panel.context import RequestContext
from expert_panel.errors import ExpertInvocationError, ExpertTimeout
from expert_panel.models import Request
from expert_panel.providers.anthropic import AnthropicProvider
from expert_panel.providers.base import ProviderReply, ReasoningProvider, parse_reply
from expert_panel.providers.gemini import GeminiProvider
from expert_panel.providers.openai_provider import OpenAIProvider
from expert_panel.providers.simulated import SimulatedProvider

from tests.conftest import make_expert

PROMPTS = PromptsConfig(expert="You are {display_name}. {persona}\n{prompt}")


def _model_config(name: str = "test", sdk: str = "test", **options) -> ModelConfig:
    return ModelConfig(
        name=name,
        sdk=sdk,
        model=f"{name}-model",
        api_key_env="TEST_PROVIDER_KEY",
        timeout_sec=30,
        max_tokens=256,
        options=options,
    )


class EchoProvider(ReasoningProvider):
    def __init__(self, raw: str) -> None:
        super().__init__(_model_config(), PROMPTS)
        self.raw = raw
        self.prompts: list[str] = []

    async def complete(self, prompt: str, timeout_sec: float) -> str:
        self.prompts.append(prompt)
        return self.raw


def _context(prompt: str = "Should we add retries?") -> RequestContext:
    return RequestContext(request=Request(id="r1", prompt=prompt))


# -- parse_reply ---------------------------------------------------------------


def test_parse_reply_splits_confidence():
    reply = parse_reply("alpha", "Use retries.\n- With backoff.\nCONFIDENCE: 0.8")
    assert reply == ProviderReply(text="Use retries.\n- With backoff.", confidence=0.8)


@pytest.mark.parametrize(
    "line, expected",
    [
        ("Confidence: 85%", 0.85),
        ("**Confidence:** 0.9", 0.9),
        ("confidence = 1", 1.0),
        ("CONFIDENCE: .5", 0.5),
    ],
)
def test_parse_reply_confidence_formats(line, expected):
    assert parse_reply("alpha", f"Answer.\n{line}").confidence == pytest.approx(expected)


def test_parse_reply_last_confidence_line_wins():
    reply = parse_reply("alpha", "CONFIDENCE: 0.2\nAnswer.\nCONFIDENCE: 0.7")
    assert reply.confidence == 0.7
    assert reply.text == "CONFIDENCE: 0.2\nAnswer."


@pytest.mark.parametrize(
    "raw, reason",
    [
        ("No confidence here.", "no CONFIDENCE line"),
        ("Answer.\nCONFIDENCE: 1.5", "outside [0, 1]"),
        ("CONFIDENCE: 0.9", "empty answer"),
        ("", "no CONFIDENCE line"),
    ],
)
def test_parse_reply_malformed(raw, reason):
    with pytest.raises(ExpertInvocationError) as exc_info:
        parse_reply("alpha", raw)
    assert reason in exc_info.value.reason
    assert exc_info.value.source == "alpha"


# -- ReasoningProvider.invoke ---------------------------------------------------


async def test_invoke_renders_persona_prompt():
    provider = EchoProvider("Retry twice.\nCONFIDENCE: 0.75")
    expert = make_expert("alpha")
    loop = asyncio.get_running_loop()
    reply = await provider.invoke(expert, _context(), loop.time() + 1.0)
    assert reply == ProviderReply("Retry twice.", 0.75)
    assert provider.prompts == ["You are Alpha. \nShould we add retries?"]


async def test_invoke_past_deadline_raises_timeout():
    provider = EchoProvider("x\nCONFIDENCE: 0.5")
    loop = asyncio.get_running_loop()
    with pytest.raises(ExpertTimeout) as exc_info:
        await provider.invoke(make_expert("alpha"), _context(), loop.time() - 0.01)
    assert exc_info.value.reason == "timeout"
    assert provider.prompts == []


async def test_invoke_malformed_output_raises():
    provider = EchoProvider("I forgot the confidence line")
    loop = asyncio.get_running_loop()
    with pytest.raises(ExpertInvocationError):
        await provider.invoke(make_expert("alpha"), _context(), loop.time() + 1.0)


def test_provider_metadata():
    provider = EchoProvider("x")
    assert provider.name() == "test"
    assert provider.model_string() == "test-model"
    assert provider.ping_prompt() == PromptsConfig.ping


# -- SimulatedProvider -----------------------------------------------------------


@pytest.fixture
def simulated() -> SimulatedProvider:
    return SimulatedProvider(_model_config("simulated", "simulated", min_latency_ms=1, max_latency_ms=5), PROMPTS)


def test_simulated_is_deterministic(simulated):
    expert = make_expert("coder")
    first = simulated.compose(expert, "Refactor the billing module")
    second = simulated.compose(expert, "Refactor the billing module")
    assert first == second
    assert first.text.startswith('Implementation approach for "Refactor the billing module":')
    assert "- Write tests alongside the change." in first.text


def test_simulated_confidence_within_role_band(simulated):
    for prompt in ("a", "b", "c", "d"):
        reply = simulated.compose(make_expert("coordinator"), prompt)
        assert 0.90 <= reply.confidence <= 0.95


def test_simulated_unknown_expert_uses_capabilities(simulated):
    expert = make_expert("auditor", "log_review", "access_control")
    reply = simulated.compose(expert, "Check permissions")
    assert reply.text.startswith('Auditor for "Check permissions":')
    assert "- Apply access control to this request." in reply.text
    assert 0.75 <= reply.confidence <= 0.85


def test_simulated_truncates_long_prompts(simulated):
    reply = simulated.compose(make_expert("analyst"), "x" * 200)
    first_line = reply.text.splitlines()[0]
    assert "x" * 77 + "..." in first_line
    assert "x" * 78 not in first_line


async def test_simulated_invoke(simulated):
    loop = asyncio.get_running_loop()
    start = loop.time()
    reply = await simulated.invoke(make_expert("validator"), _context(), start + 1.0)
    assert reply.text.startswith("Validation assessment")
    assert loop.time() - start < 0.5


async def test_simulated_ping(simulated):
    assert await simulated.complete("Reply with the word OK only.", 1.0) == "OK"


# -- SDK providers ----------------------------------------------------------------


@pytest.mark.parametrize("provider_cls", [AnthropicProvider, OpenAIProvider, GeminiProvider])
def test_sdk_provider_requires_key(provider_cls, monkeypatch):
    monkeypatch.delenv("TEST_PROVIDER_KEY", raising=False)
    with pytest.raises(ExpertInvocationError, match="Missing API key"):
        provider_cls(_model_config(), PROMPTS)


async def test_anthropic_complete_joins_text_blocks(monkeypatch):
    monkeypatch.setenv("TEST_PROVIDER_KEY", "sk-test")
    provider = AnthropicProvider(_model_config("claude", "anthropic"), PROMPTS)
    response = SimpleNamespace(
        content=[SimpleNamespace(type="text", text="Part one."), SimpleNamespace(type="text", text="Part two.")],
        usage=SimpleNamespace(input_tokens=10, output_tokens=5),
    )
    provider._client = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(return_value=response)))
    assert await provider.complete("hi", 5.0) == "Part one.\nPart two."


async def test_openai_complete_wraps_api_errors(monkeypatch):
    monkeypatch.setenv("TEST_PROVIDER_KEY", "sk-test")
    provider = OpenAIProvider(_model_config("openai", "openai"), PROMPTS)
    create = AsyncMock(side_effect=RuntimeError("503 Service Unavailable"))
    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    with pytest.raises(ExpertInvocationError, match="503"):
        await provider.complete("hi", 5.0)


async def test_openai_complete_times_out(monkeypatch):
    monkeypatch.setenv("TEST_PROVIDER_KEY", "sk-test")
    provider = OpenAIProvider(_model_config("grok", "openai"), PROMPTS)

    async def slow_create(**kwargs):
        await asyncio.sleep(1.0)

    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=slow_create)))
    with pytest.raises(ExpertTimeout):
        await provider.complete("hi", 0.01)


async def test_openai_complete_rejects_empty_content(monkeypatch):
    monkeypatch.setenv("TEST_PROVIDER_KEY", "sk-test")
    provider = OpenAIProvider(_model_config("openai", "openai"), PROMPTS)
    response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=""))], usage=None)
    create = AsyncMock(return_value=response)
    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    with pytest.raises(ExpertInvocationError, match="Empty response"):
        await provider.complete("hi", 5.0)
