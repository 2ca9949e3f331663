"""
Configuration loading for junkrat.

Loads junkrat.yaml from the project directory and merges it over built-in
defaults, then applies JUNKRAT_* environment overrides. If no config file
exists, defaults are used (Ollama on localhost, everything else disabled).

API keys are normally supplied via the environment:
    JUNKRAT_GEMINI_API_KEY, JUNKRAT_OPENROUTER_API_KEY, JUNKRAT_CUSTOM_API_KEY
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import yaml

from junkrat.lib.constants import (
    CONFIDENCE_THRESHOLD,
    DEFAULT_MAX_ITERATIONS,
    PAUSE_POLL_INTERVAL,
    PROVIDER_PRIORITY,
    SAVE_DEBOUNCE_SECONDS,
    SLIDING_WINDOW_SIZE,
    SUMMARY_TRIGGER_RATIO,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "junkrat.yaml"
ENV_PREFIX = "JUNKRAT_"

# Ordered by fallback priority.
# timeout is in seconds.
DEFAULT_PROVIDERS = {
    "ollama": {
        "enabled": True,
        "base_url": "http://127.0.0.1:11434",
        "model": "llama3",
        "timeout": 30.0,
        "max_retries": 3,
    },
    "gemini": {
        "enabled": False,
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "model": "gemini-2.0-flash-exp",
        "timeout": 60.0,
        "max_retries": 3,
    },
    "openrouter": {
        "enabled": False,
        "base_url": "https://openrouter.ai/api/v1",
        "model": "openai/gpt-4o",
        "timeout": 60.0,
        "max_retries": 3,
    },
    "custom": {
        "enabled": False,
        "base_url": "http://localhost:8080/v1",
        "model": "gpt-3.5-turbo",
        "timeout": 60.0,
        "max_retries": 3,
    },
}

# Providers that talk to hosted APIs and need a key
KEYED_PROVIDERS = ("gemini", "openrouter")
VERIFICATION_POLICIES = ("lenient", "strict")


class ConfigError(Exception):
    """Configuration is unusable."""
    pass


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw}; using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid float for {name}={raw}; using {default:.2f}")
        return default


@dataclass
class ProviderSettings:
    """Connection settings for one provider."""
    id: str
    enabled: bool
    base_url: str
    model: str
    timeout: float  # seconds
    max_retries: int
    api_key: str | None = None

    def to_public_dict(self) -> dict:
        """Settings safe to print or log (API key redacted)."""
        return {
            "id": self.id,
            "enabled": self.enabled,
            "base_url": self.base_url,
            "model": self.model,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "api_key": "***" if self.api_key else None,
        }


@dataclass
class RetrySettings:
    initial_delay: float = 1.0
    max_delay: float = 10.0
    factor: float = 2.0
    jitter: bool = True


@dataclass
class ContextSettings:
    summary_trigger_ratio: float = SUMMARY_TRIGGER_RATIO
    sliding_window_size: int = SLIDING_WINDOW_SIZE


@dataclass
class ExecutionSettings:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    confidence_threshold: int = CONFIDENCE_THRESHOLD
    verification: str = "lenient"  # "lenient" or "strict"
    pause_poll_interval: float = PAUSE_POLL_INTERVAL


@dataclass
class StorageSettings:
    directory: str = ".junkrat"  # Relative to the project directory
    save_debounce: float = SAVE_DEBOUNCE_SECONDS


def _default_providers() -> dict[str, ProviderSettings]:
    return {pid: ProviderSettings(id=pid, **values) for pid, values in copy.deepcopy(DEFAULT_PROVIDERS).items()}


@dataclass
class Settings:
    """Everything junkrat needs to wire itself together."""
    active_provider: str = "ollama"
    providers: dict[str, ProviderSettings] = field(default_factory=_default_providers)
    retry: RetrySettings = field(default_factory=RetrySettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    project_dir: Path = field(default_factory=Path.cwd)

    def enabled_providers(self) -> list[ProviderSettings]:
        """Enabled providers, priority order first, then any extra ids."""
        ordered = [pid for pid in PROVIDER_PRIORITY if pid in self.providers]
        ordered += [pid for pid in self.providers if pid not in PROVIDER_PRIORITY]
        return [self.providers[pid] for pid in ordered if self.providers[pid].enabled]

    @property
    def storage_dir(self) -> Path:
        path = Path(self.storage.directory)
        return path if path.is_absolute() else self.project_dir / path


def _merge_section(target, data: dict | None, section: str) -> None:
    """Copy known keys from a YAML mapping onto a settings dataclass."""
    if not data:
        return
    if not isinstance(data, dict):
        raise ConfigError(f"'{section}' must be a mapping")
    for key, value in data.items():
        if not hasattr(target, key):
            logger.warning(f"Unknown setting {section}.{key}, ignoring")
            continue
        setattr(target, key, value)


def _apply_env_overrides(settings: Settings) -> None:
    for pid, provider in settings.providers.items():
        prefix = f"{ENV_PREFIX}{pid.upper()}_"
        provider.api_key = os.environ.get(f"{prefix}API_KEY", provider.api_key)
        provider.base_url = os.environ.get(f"{prefix}BASE_URL", provider.base_url)
        provider.model = os.environ.get(f"{prefix}MODEL", provider.model)
        provider.enabled = _env_flag(f"{prefix}ENABLED", provider.enabled)
        provider.timeout = _env_float(f"{prefix}TIMEOUT", provider.timeout)

    settings.active_provider = os.environ.get(f"{ENV_PREFIX}ACTIVE_PROVIDER", settings.active_provider)
    settings.execution.max_iterations = _env_int(
        f"{ENV_PREFIX}MAX_ITERATIONS", settings.execution.max_iterations
    )
    settings.execution.verification = os.environ.get(
        f"{ENV_PREFIX}VERIFICATION", settings.execution.verification
    )


def load_settings(project_dir: Optional[Path] = None) -> Settings:
    """Load junkrat.yaml and environment overrides into Settings.

    If project_dir is None or the file doesn't exist, defaults are used.
    A malformed file logs a warning and falls back to defaults.

    Raises:
        ConfigError: If the resulting settings are structurally invalid
            (unknown verification policy)
    """
    settings = Settings(project_dir=project_dir or Path.cwd())

    config_path = settings.project_dir / CONFIG_FILENAME
    if config_path.exists():
        try:
            data = yaml.safe_load(config_path.read_text()) or {}
            if not isinstance(data, dict):
                raise ConfigError("top level must be a mapping")
            _load_mapping(settings, data)
        except (yaml.YAMLError, ConfigError, TypeError) as e:
            logger.warning(f"Failed to parse {config_path}: {e}")
            settings = Settings(project_dir=settings.project_dir)

    _apply_env_overrides(settings)

    if settings.execution.verification not in VERIFICATION_POLICIES:
        raise ConfigError(
            f"execution.verification must be one of {VERIFICATION_POLICIES}, "
            f"got '{settings.execution.verification}'"
        )
    return settings


def _load_mapping(settings: Settings, data: dict) -> None:
    if "active_provider" in data:
        settings.active_provider = str(data["active_provider"])

    for pid, values in (data.get("providers") or {}).items():
        if pid not in settings.providers:
            # Extra OpenAI-compatible endpoints are allowed; start from the custom defaults
            base = dict(DEFAULT_PROVIDERS["custom"])
            settings.providers[pid] = ProviderSettings(id=pid, **base)
        _merge_section(settings.providers[pid], values, f"providers.{pid}")

    _merge_section(settings.retry, data.get("retry"), "retry")
    _merge_section(settings.context, data.get("context"), "context")
    _merge_section(settings.execution, data.get("execution"), "execution")
    _merge_section(settings.storage, data.get("storage"), "storage")


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_provider_settings(provider_id: str, settings: ProviderSettings) -> ValidationResult:
    """Check a provider's settings before it is used.

    Hosted providers need an API key; local/custom endpoints need a valid
    base URL. Disabled providers only produce a warning.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not settings.enabled:
        warnings.append("Provider is disabled.")
        return ValidationResult(valid=True, errors=errors, warnings=warnings)

    if provider_id in KEYED_PROVIDERS and not settings.api_key:
        errors.append("API key is required when enabled.")

    if provider_id not in KEYED_PROVIDERS:
        if not settings.base_url:
            errors.append("Base URL is required when enabled.")
        elif not _is_valid_url(settings.base_url):
            errors.append("Base URL must be a valid URL.")

    if settings.timeout is not None and settings.timeout <= 0:
        errors.append("Timeout must be greater than 0.")

    if settings.max_retries is not None and settings.max_retries < 0:
        errors.append("Max retries must be 0 or greater.")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
