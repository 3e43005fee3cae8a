"""Configuration — MenderConfig and its sections.

Defaults live on the dataclasses; config.yaml overrides any subset.
Each top-level YAML mapping with a section name (rate_limit, health,
fallback, guard, review, breaker, auto_repair, scheduling,
orchestration) overrides fields of that section.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Backoff and circuit settings for the resilient provider wrapper."""
    base_backoff: float = 5.0
    max_backoff: float = 300.0
    circuit_threshold: int = 3


@dataclass
class HealthConfig:
    """Provider health thresholds."""
    degraded_threshold: int = 1
    failure_threshold: int = 3
    repair_cooldown: float = 300.0
    recovery_check_interval: float = 300.0


@dataclass
class FallbackConfig:
    """What happens to work served by the fallback provider."""
    enabled: bool = True
    track_changes: bool = True
    auto_review: bool = True
    confirmation_priority: int = 50
    max_confirmations_per_run: int = 3


@dataclass
class GuardConfig:
    """Static policy limits applied to every change."""
    max_files_per_change: int = 5
    max_lines_per_file: int = 500
    protected_patterns: list[str] = field(default_factory=lambda: [
        "mender/review/",
        "mender/resilience/",
        "mender/config",
        "pyproject.toml",
        ".env",
    ])
    allowed_extensions: list[str] = field(default_factory=lambda: [
        ".py", ".pyi", ".json", ".yaml", ".yml", ".toml",
        ".md", ".txt", ".cfg", ".ini",
    ])


@dataclass
class ReviewConfig:
    """Multi-judge voting gate and appeal ladder."""
    max_trials: int = 3
    voting_threshold: float = 0.6
    judges: list[str] = field(default_factory=lambda: ["claude", "openai"])
    judge_weights: dict[str, float] = field(default_factory=lambda: {
        "claude": 0.6,
        "openai": 0.4,
    })
    default_weight: float = 0.3
    default_confidence: float = 0.7
    # weighted: Σ(w·c·approved) / Σ(w·c); discounted: Σ(w·c·approved) / Σ(w)
    voting_mode: str = "weighted"
    required_judges: int = 2
    fallback_behavior: str = "reject"  # reject | single-judge
    code_excerpt_chars: int = 1500


@dataclass
class BreakerConfig:
    """Repair-loop circuit breaker."""
    max_attempts_per_error: int = 3
    max_consecutive_failures_per_source: int = 5
    max_consecutive_failures_global: int = 10
    cooldown: float = 3600.0
    half_open_test_count: int = 2


@dataclass
class AutoRepairConfig:
    """Automated repair of aggregated errors via a CLI agent."""
    enabled: bool = True
    max_concurrent: int = 1
    default_max_attempts: int = 3
    cli: str = "claude"
    cli_args: list[str] = field(default_factory=lambda: ["-p"])
    timeout: float = 600.0
    terminate_grace: float = 5.0


@dataclass
class SchedulingConfig:
    """Timers for the cycle and maintenance tasks."""
    cycle_interval: float = 3600.0
    cycle_cron: str = ""
    health_check_interval: float = 300.0
    repair_interval: float = 600.0
    confirmation_interval: float = 1800.0
    cleanup_cron: str = "0 3 * * *"
    max_retries: int = 3
    base_backoff: float = 5.0
    max_backoff: float = 600.0
    cooldown: float = 600.0


@dataclass
class OrchestrationConfig:
    """Cycle-level limits and retention."""
    max_consecutive_failures: int = 5
    cleanup_days: int = 30


@dataclass
class MenderConfig:
    """Top-level configuration."""
    workspace_dir: str = "workspace"
    source_dir: str = "src"
    test_dir: str = "tests"

    # Provider names resolved by providers.create_provider
    primary_provider: str = "claude"
    fallback_provider: str = "openai"
    provider_models: dict[str, str] = field(default_factory=lambda: {
        "claude": "claude-opus-4-6",
        "anthropic": "claude-opus-4-6",
        "openai": "gpt-4o",
        "gemini": "gemini-2.5-flash",
    })
    provider_timeout: float = 300.0
    openai_base_url: str = ""

    # Commands run by the health-check, error-detect and verify phases
    health_commands: list[list[str]] = field(default_factory=lambda: [
        ["python", "-m", "compileall", "-q", "src"],
    ])
    detect_commands: list[list[str]] = field(default_factory=list)
    verify_commands: list[list[str]] = field(default_factory=lambda: [
        ["python", "-m", "pytest", "-q", "-x"],
    ])
    command_timeout: float = 600.0
    max_files_analyzed: int = 5

    alert_webhook: str = ""  # or MENDER_ALERT_WEBHOOK env var

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    guard: GuardConfig = field(default_factory=GuardConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    auto_repair: AutoRepairConfig = field(default_factory=AutoRepairConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)

    @property
    def workspace(self) -> Path:
        return Path(self.workspace_dir)

    def resolve_alert_webhook(self) -> str:
        return self.alert_webhook or os.environ.get("MENDER_ALERT_WEBHOOK", "")

    def model_for(self, provider: str) -> str:
        return self.provider_models.get(provider, "")


_SECTIONS: dict[str, type] = {
    "rate_limit": RateLimitConfig,
    "health": HealthConfig,
    "fallback": FallbackConfig,
    "guard": GuardConfig,
    "review": ReviewConfig,
    "breaker": BreakerConfig,
    "auto_repair": AutoRepairConfig,
    "scheduling": SchedulingConfig,
    "orchestration": OrchestrationConfig,
}


def _build(cls: type, raw: dict[str, Any]) -> Any:
    """Instantiate a config dataclass from the known keys of a raw mapping."""
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(raw) - known - set(_SECTIONS)
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**{k: v for k, v in raw.items() if k in known and k not in _SECTIONS})


def load_config(config_path: str | Path | None = None) -> MenderConfig:
    """Load config from a YAML file. Missing file yields defaults."""
    if config_path is None:
        config_path = Path("mender.yaml")

    config_path = Path(config_path)
    if not config_path.exists():
        return MenderConfig()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"{config_path}: top level must be a mapping")

    config = _build(MenderConfig, raw)
    for name, cls in _SECTIONS.items():
        section = raw.get(name)
        if section is None:
            continue
        if not isinstance(section, dict):
            raise ValueError(f"{config_path}: section '{name}' must be a mapping")
        setattr(config, name, _build(cls, section))
    return config
