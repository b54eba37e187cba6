"""Load settings.yaml into typed dataclasses. Validates timeouts and API keys at startup."""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from types import MappingProxyType

import yaml

from expert_panel.models import ExpertDescriptor

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

# SDKs that run in-process and never need an API key
_KEYLESS_SDKS = {"simulated"}


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None
    options: dict = field(default_factory=dict)  # SDK-specific extras


_MODEL_KEYS = {"sdk", "model", "api_key_env", "timeout_sec", "max_tokens", "base_url"}


@dataclass
class PromptsConfig:
    expert: str
    ping: str = "Reply with the word OK only."


@dataclass(frozen=True)
class EngineSettings:
    expert_timeout_ms: int = 200
    consensus_deadline_ms: int = 400
    singular_deadline_ms: int = 250
    max_concurrency: int = 6
    history_limit: int = 10

    @property
    def expert_timeout_sec(self) -> float:
        return self.expert_timeout_ms / 1000.0

    def deadline_sec(self, mode: str) -> float:
        """Overall request deadline for a resolved mode."""
        if mode == "singular":
            return self.singular_deadline_ms / 1000.0
        return self.consensus_deadline_ms / 1000.0


@dataclass(frozen=True)
class StrategyCoefficients:
    """raw = default_weight * (base + relevance * r + confidence * c)"""

    base: float
    relevance: float
    confidence: float


_DEFAULT_COEFFICIENTS = {
    "balanced": StrategyCoefficients(base=0.5, relevance=0.3, confidence=0.2),
    "quality_focused": StrategyCoefficients(base=0.75, relevance=0.05, confidence=0.2),
    "workflow_focused": StrategyCoefficients(base=0.4, relevance=0.45, confidence=0.15),
}

_DEFAULT_ADAPTIVE_MAP = {"workflow": "workflow_focused", "quality": "quality_focused"}


@dataclass(frozen=True)
class WeightingConfig:
    strategy: str = "adaptive"
    coefficients: Mapping[str, StrategyCoefficients] = field(
        default_factory=lambda: MappingProxyType(dict(_DEFAULT_COEFFICIENTS))
    )
    # Dominant request vocabulary -> strategy picked by "adaptive"
    adaptive_map: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType(dict(_DEFAULT_ADAPTIVE_MAP))
    )

    @property
    def strategies(self) -> set[str]:
        return set(self.coefficients) | {"adaptive"}


@dataclass(frozen=True)
class ConsensusPolicy:
    breadth_bonus: float = 0.05
    agreement_bonus: float = 0.03
    agreement_sensitivity: float = 100.0
    confidence_cap: float = 0.98
    similarity_threshold: float = 0.7


@dataclass(frozen=True)
class BreakerConfig:
    enabled: bool = True
    failure_threshold: float = 0.5
    window: int = 20
    min_calls: int = 5
    reset_sec: float = 30.0


@dataclass
class TriggerConfig:
    code_mutation: list[str] = field(default_factory=list)
    planning_discussion: list[str] = field(default_factory=list)


@dataclass
class InboxConfig:
    dir: Path = Path("./inbox")
    archive_dir: Path = Path("./inbox/archive")


@dataclass
class AppConfig:
    engine: EngineSettings
    experts: list[ExpertDescriptor]
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    weighting: WeightingConfig = field(default_factory=WeightingConfig)
    consensus: ConsensusPolicy = field(default_factory=ConsensusPolicy)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    triggers: TriggerConfig = field(default_factory=TriggerConfig)
    vocabularies: dict[str, list[str]] = field(default_factory=dict)
    patterns: dict[str, str] = field(default_factory=dict)
    output_dir: Path = Path("./output")
    inbox: InboxConfig = field(default_factory=InboxConfig)
    available_providers: set[str] = field(default_factory=set)


def _load_engine(raw: dict) -> EngineSettings:
    engine = EngineSettings(
        expert_timeout_ms=int(raw["expert_timeout_ms"]),
        consensus_deadline_ms=int(raw["consensus_deadline_ms"]),
        singular_deadline_ms=int(raw["singular_deadline_ms"]),
        max_concurrency=int(raw.get("max_concurrency", 6)),
        history_limit=int(raw.get("history_limit", 10)),
    )
    # An overall deadline must leave room for one full expert round
    for name in ("consensus_deadline_ms", "singular_deadline_ms"):
        if getattr(engine, name) <= engine.expert_timeout_ms:
            raise ValueError(
                f"engine.{name} ({getattr(engine, name)}) must be greater than "
                f"engine.expert_timeout_ms ({engine.expert_timeout_ms})"
            )
    if engine.max_concurrency < 1:
        raise ValueError("engine.max_concurrency must be at least 1")
    return engine


def _load_weighting(raw: dict) -> WeightingConfig:
    coefficients = dict(_DEFAULT_COEFFICIENTS)
    for name, coeff_raw in (raw.get("strategies") or {}).items():
        coeff = StrategyCoefficients(
            base=float(coeff_raw["base"]),
            relevance=float(coeff_raw["relevance"]),
            confidence=float(coeff_raw["confidence"]),
        )
        if min(coeff.base, coeff.relevance, coeff.confidence) < 0.0:
            raise ValueError(f"weighting.strategies.{name} coefficients must not be negative")
        coefficients[name] = coeff
    adaptive_map = dict(raw.get("adaptive_map") or _DEFAULT_ADAPTIVE_MAP)
    config = WeightingConfig(
        strategy=str(raw.get("strategy", "adaptive")),
        coefficients=MappingProxyType(coefficients),
        adaptive_map=MappingProxyType(adaptive_map),
    )
    if config.strategy not in config.strategies:
        raise ValueError(f"Unknown weighting strategy: {config.strategy}")
    unknown = set(adaptive_map.values()) - set(coefficients)
    if unknown:
        raise ValueError(f"adaptive_map references unknown strategies: {sorted(unknown)}")
    return config


def _load_experts(raw: list[dict]) -> list[ExpertDescriptor]:
    return [
        ExpertDescriptor(
            id=str(expert_raw["id"]),
            display_name=str(expert_raw.get("display_name", expert_raw["id"])),
            capabilities=frozenset(expert_raw.get("capabilities", [])),
            default_weight=float(expert_raw.get("default_weight", 1.0)),
            domain=str(expert_raw.get("domain", "general")),
            provider=str(expert_raw.get("provider", "simulated")),
            persona=str(expert_raw.get("persona", "")).strip(),
        )
        for expert_raw in raw
    ]


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing and ValueError on
    inconsistent timeouts or strategies.
    Logs missing API keys but does not raise; callers check
    available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    engine = _load_engine(raw["engine"])
    weighting = _load_weighting(raw.get("weighting") or {})

    consensus_raw = raw.get("consensus") or {}
    unknown_keys = set(consensus_raw) - {f.name for f in fields(ConsensusPolicy)}
    if unknown_keys:
        raise ValueError(f"Unknown consensus settings: {sorted(unknown_keys)}")
    consensus = ConsensusPolicy(**{k: float(v) for k, v in consensus_raw.items()})

    breaker_raw = raw.get("breaker") or {}
    breaker = BreakerConfig(
        enabled=bool(breaker_raw.get("enabled", True)),
        failure_threshold=float(breaker_raw.get("failure_threshold", 0.5)),
        window=int(breaker_raw.get("window", 20)),
        min_calls=int(breaker_raw.get("min_calls", 5)),
        reset_sec=float(breaker_raw.get("reset_sec", 30.0)),
    )

    triggers_raw = raw.get("triggers") or {}
    triggers = TriggerConfig(
        code_mutation=list(triggers_raw.get("code_mutation", [])),
        planning_discussion=list(triggers_raw.get("planning_discussion", [])),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        expert=prompts_raw["expert"],
        ping=prompts_raw.get("ping", PromptsConfig.ping),
    )

    inbox_raw = raw.get("inbox") or {}
    inbox = InboxConfig(
        dir=Path(inbox_raw.get("dir", "./inbox")),
        archive_dir=Path(inbox_raw.get("archive_dir", "./inbox/archive")),
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw.get("model", provider_name),
            api_key_env=model_raw.get("api_key_env", ""),
            timeout_sec=int(model_raw.get("timeout_sec", 30)),
            max_tokens=int(model_raw.get("max_tokens", 1024)),
            base_url=model_raw.get("base_url"),
            options={k: v for k, v in model_raw.items() if k not in _MODEL_KEYS},
        )
        models[provider_name] = model_cfg

        if model_cfg.sdk in _KEYLESS_SDKS:
            available_providers.add(provider_name)
            continue

        api_key = os.environ.get(model_cfg.api_key_env, "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                model_cfg.api_key_env,
            )

    return AppConfig(
        engine=engine,
        experts=_load_experts(raw["experts"]),
        models=models,
        prompts=prompts,
        weighting=weighting,
        consensus=consensus,
        breaker=breaker,
        triggers=triggers,
        vocabularies={k: [str(t).lower() for t in v] for k, v in (raw.get("vocabularies") or {}).items()},
        patterns={str(k): str(v).strip() for k, v in (raw.get("patterns") or {}).items()},
        output_dir=Path(raw.get("output_dir", "./output")),
        inbox=inbox,
        available_providers=available_providers,
    )
