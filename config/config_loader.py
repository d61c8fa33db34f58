"""Load settings.yaml into typed dataclasses. Checks API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ProviderConfig:
    name: str
    sdk: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class RoleConfig:
    name: str
    persona: str


@dataclass
class ParticipantConfig:
    id: str
    provider: str
    model: str
    role: str


@dataclass
class ModerationConfig:
    max_speakers_per_round: int = 2
    cooldown_sec: float = 2.5
    require_acknowledgment: bool = True


@dataclass
class DiscussionConfig:
    consensus_threshold: float = 7.0
    silence_threshold: int = 2
    consensus_window: int = 10


@dataclass
class ModelRate:
    input_per_1k: float
    output_per_1k: float


@dataclass
class BudgetConfig:
    session_cap_usd: float
    daily_cap_usd: float | None = None
    monthly_cap_usd: float | None = None
    warning_threshold: float = 0.80
    critical_threshold: float = 0.95
    default_rate: ModelRate = field(default_factory=lambda: ModelRate(0.01, 0.02))
    pricing: dict[str, dict[str, ModelRate]] = field(default_factory=dict)
    provider_caps: dict[str, float] = field(default_factory=dict)
    model_caps: dict[str, float] = field(default_factory=dict)


@dataclass
class PromptsConfig:
    system: str
    follow_up: str
    interjection: str
    acknowledgment: str
    summary: str
    reaction_phrases: list[str] = field(default_factory=list)


@dataclass
class TemplateRoundConfig:
    prompt: str
    focus: list[str] | None = None


@dataclass
class TemplateConfig:
    name: str
    description: str
    rounds: list[TemplateRoundConfig]


@dataclass
class DefaultsConfig:
    rounds: int
    max_rounds: int
    output_dir: Path
    context_tokens: int = 4000
    recent_messages: int = 20
    summarizer: str | None = None


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    providers: dict[str, ProviderConfig]
    roles: dict[str, RoleConfig]
    participants: list[ParticipantConfig]
    moderation: ModerationConfig
    discussion: DiscussionConfig
    budget: BudgetConfig
    prompts: PromptsConfig
    templates: dict[str, TemplateConfig] = field(default_factory=dict)
    available_providers: set[str] = field(default_factory=set)


def _parse_rate(raw: dict) -> ModelRate:
    return ModelRate(input_per_1k=float(raw["input"]), output_per_1k=float(raw["output"]))


def _optional_float(value) -> float | None:
    return None if value is None else float(value)


def _parse_budget(raw: dict) -> BudgetConfig:
    pricing = {
        provider: {model: _parse_rate(rate) for model, rate in models.items()}
        for provider, models in raw.get("pricing", {}).items()
    }
    budget = BudgetConfig(
        session_cap_usd=float(raw["session_cap_usd"]),
        daily_cap_usd=_optional_float(raw.get("daily_cap_usd")),
        monthly_cap_usd=_optional_float(raw.get("monthly_cap_usd")),
        pricing=pricing,
        provider_caps={name: float(cap) for name, cap in (raw.get("provider_caps") or {}).items()},
        model_caps={name: float(cap) for name, cap in (raw.get("model_caps") or {}).items()},
    )
    if "warning_threshold" in raw:
        budget.warning_threshold = float(raw["warning_threshold"])
    if "critical_threshold" in raw:
        budget.critical_threshold = float(raw["critical_threshold"])
    if "default_rate" in raw:
        budget.default_rate = _parse_rate(raw["default_rate"])
    if not 0 < budget.warning_threshold <= budget.critical_threshold <= 1:
        raise ValueError(
            "budget thresholds must satisfy 0 < warning_threshold <= critical_threshold <= 1"
        )
    return budget


def _parse_templates(raw: dict) -> dict[str, TemplateConfig]:
    templates: dict[str, TemplateConfig] = {}
    for template_id, template_raw in raw.items():
        rounds = []
        for round_raw in template_raw["rounds"]:
            focus = round_raw.get("focus", "all")
            rounds.append(
                TemplateRoundConfig(
                    prompt=str(round_raw["prompt"]),
                    focus=None if focus == "all" else [str(f) for f in focus],
                )
            )
        templates[template_id] = TemplateConfig(
            name=str(template_raw["name"]),
            description=str(template_raw.get("description", "")),
            rounds=rounds,
        )
    return templates


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError if a
    participant points at an unknown provider or role.
    Logs missing API keys but does not raise; callers check
    available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        rounds=int(defaults_raw["rounds"]),
        max_rounds=int(defaults_raw["max_rounds"]),
        output_dir=Path(defaults_raw["output_dir"]),
        context_tokens=int(defaults_raw.get("context_tokens", 4000)),
        recent_messages=int(defaults_raw.get("recent_messages", 20)),
        summarizer=defaults_raw.get("summarizer"),
    )

    providers: dict[str, ProviderConfig] = {}
    available_providers: set[str] = set()
    for provider_name, provider_raw in raw["providers"].items():
        providers[provider_name] = ProviderConfig(
            name=provider_name,
            sdk=provider_raw["sdk"],
            api_key_env=provider_raw["api_key_env"],
            timeout_sec=int(provider_raw["timeout_sec"]),
            max_tokens=int(provider_raw["max_tokens"]),
            base_url=provider_raw.get("base_url"),
        )
        api_key = os.environ.get(provider_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                provider_raw["api_key_env"],
            )

    roles = {
        role_id: RoleConfig(name=str(role_raw["name"]), persona=str(role_raw.get("persona", "")))
        for role_id, role_raw in raw["roles"].items()
    }

    participants: list[ParticipantConfig] = []
    for participant_raw in raw.get("participants", []):
        participant = ParticipantConfig(
            id=str(participant_raw["id"]),
            provider=str(participant_raw["provider"]),
            model=str(participant_raw["model"]),
            role=str(participant_raw["role"]),
        )
        if participant.provider not in providers:
            raise ValueError(f"Participant {participant.id} uses unknown provider {participant.provider}")
        if participant.role not in roles:
            raise ValueError(f"Participant {participant.id} uses unknown role {participant.role}")
        participants.append(participant)

    moderation_raw = raw.get("moderation", {})
    moderation = ModerationConfig(
        max_speakers_per_round=int(moderation_raw.get("max_speakers_per_round", 2)),
        cooldown_sec=float(moderation_raw.get("cooldown_sec", 2.5)),
        require_acknowledgment=bool(moderation_raw.get("require_acknowledgment", True)),
    )

    discussion_raw = raw.get("discussion", {})
    discussion = DiscussionConfig(
        consensus_threshold=float(discussion_raw.get("consensus_threshold", 7.0)),
        silence_threshold=int(discussion_raw.get("silence_threshold", 2)),
        consensus_window=int(discussion_raw.get("consensus_window", 10)),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        system=prompts_raw["system"],
        follow_up=prompts_raw["follow_up"],
        interjection=prompts_raw["interjection"],
        acknowledgment=prompts_raw["acknowledgment"],
        summary=prompts_raw["summary"],
        reaction_phrases=[str(p) for p in prompts_raw.get("reaction_phrases", [])],
    )

    return AppConfig(
        defaults=defaults,
        providers=providers,
        roles=roles,
        participants=participants,
        moderation=moderation,
        discussion=discussion,
        budget=_parse_budget(raw["budget"]),
        prompts=prompts,
        templates=_parse_templates(raw.get("templates", {})),
        available_providers=available_providers,
    )
