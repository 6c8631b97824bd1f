"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from ..ai.ai_types import AgentRetryPolicy
from ..ai.client import ClientSettings
from ..ai.errors import ConfigurationError
from ..ai.services.context_policy import DEFAULT_HISTORY_FRACTION, ContextBudget
from .secrets import SecretVault

__all__ = [
    "Settings",
    "SECRET_FIELD",
    "SettingsStore",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
DEFAULT_SETTINGS_PATH = Path.home() / ".termpilot" / "settings.json"
SETTINGS_VERSION = 1
SECRET_FIELD = "api_key_ciphertext"
_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "debug"})


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


# Environment variable -> (settings field, converter).
_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "TERMPILOT_API_KEY": ("api_key", str),
    "TERMPILOT_BASE_URL": ("base_url", str),
    "TERMPILOT_MODEL": ("model", str),
    "TERMPILOT_ORGANIZATION": ("organization", str),
    "TERMPILOT_ROLE": ("assistant_role", str),
    "TERMPILOT_DEBUG_LOGGING": ("debug_logging", _parse_bool),
    "TERMPILOT_ALLOW_PARALLEL_TOOLS": ("allow_parallel_tools", _parse_bool),
    "TERMPILOT_SHOW_TOOL_OUTPUT": ("show_tool_output", _parse_bool),
    "TERMPILOT_SHOW_REASONING": ("show_reasoning", _parse_bool),
    "TERMPILOT_REQUEST_TIMEOUT": ("request_timeout", float),
    "TERMPILOT_TEMPERATURE": ("temperature", float),
    "TERMPILOT_HISTORY_FRACTION": ("history_fraction", float),
    "TERMPILOT_TOOL_TIMEOUT": ("tool_timeout_seconds", float),
    "TERMPILOT_TURN_TIMEOUT": ("turn_timeout_seconds", float),
    "TERMPILOT_MAX_CONTEXT_TOKENS": ("max_context_tokens", int),
    "TERMPILOT_MAX_RETRIES": ("max_retries", int),
    "TERMPILOT_MAX_TOOL_ITERATIONS": ("max_tool_iterations", int),
}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    assistant_role: str = ""
    temperature: float = 0.2
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_context_tokens: int = 128_000
    reserved_tool_tokens: int = 4_000
    history_fraction: float = DEFAULT_HISTORY_FRACTION
    max_tool_iterations: int = 8
    tool_timeout_seconds: float | None = 120.0
    turn_timeout_seconds: float | None = None
    allow_parallel_tools: bool = False
    summarize_dropped_history: bool = True
    debug_logging: bool = False
    show_tool_output: bool = False
    show_reasoning: bool = False
    default_headers: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> "Settings":
        """Raise :class:`ConfigurationError` when required settings are missing or invalid."""

        missing: list[str] = []
        if not (self.api_key or "").strip():
            missing.append("api_key")
        if not (self.model or "").strip():
            missing.append("model")
        if not (self.base_url or "").strip():
            missing.append("base_url")
        if missing:
            raise ConfigurationError(
                f"Missing required settings: {', '.join(missing)}",
                missing=missing,
            )
        if self.max_context_tokens <= self.reserved_tool_tokens:
            raise ConfigurationError(
                "max_context_tokens must be larger than reserved_tool_tokens "
                f"({self.max_context_tokens} <= {self.reserved_tool_tokens})"
            )
        if not 0.0 < self.history_fraction <= 1.0:
            raise ConfigurationError(f"history_fraction must be within (0, 1], got {self.history_fraction}")
        if self.max_tool_iterations < 1:
            raise ConfigurationError("max_tool_iterations must be at least 1")
        return self

    def context_budget(self) -> ContextBudget:
        return ContextBudget(
            total_capacity=int(self.max_context_tokens),
            reserved_for_system_and_tools=int(self.reserved_tool_tokens),
            target_fraction=float(self.history_fraction),
        )

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            temperature=self.temperature,
            default_headers=dict(self.default_headers) or None,
            metadata=dict(self.metadata) or None,
            debug_logging=self.debug_logging,
        )

    def retry_policy(self) -> AgentRetryPolicy:
        return AgentRetryPolicy(
            max_attempts=self.max_retries,
            backoff_min_seconds=self.retry_min_seconds,
            backoff_max_seconds=self.retry_max_seconds,
        ).clamp()


class SettingsStore:
    """JSON persistence for :class:`Settings` with CLI and environment overrides.

    Precedence is file < ``overrides`` passed to :meth:`load` < ``TERMPILOT_*``
    environment variables. Unknown keys are ignored at every layer. The API
    key is written only as ``api_key_ciphertext``, encrypted by *vault*.
    """

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        payload = self._read()
        payload["api_key"] = self._stored_api_key(payload)
        settings = _settings_from(payload)
        if overrides:
            settings = _merge(settings, overrides, source="caller")
        settings = _merge(settings, _environment_overrides(), source="environment")
        LOGGER.debug(
            "Loaded settings from %s (model=%s, api_key=%s)",
            self._path,
            settings.model,
            redact_secret(settings.api_key),
        )
        return settings

    def save(self, settings: Settings) -> Path:
        """Write *settings* atomically and return the path written."""

        payload = asdict(settings)
        payload[SECRET_FIELD] = self._vault.encrypt(payload.pop("api_key", ""))
        payload["version"] = SETTINGS_VERSION
        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(".tmp")
        staging.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        staging.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _stored_api_key(self, payload: Dict[str, Any]) -> str:
        ciphertext = payload.pop(SECRET_FIELD, None)
        legacy = payload.pop("api_key", None)
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Ignoring stored API key from %s: %s", self._path, exc)
                return ""
        if legacy:
            # Re-saving writes the encrypted form.
            LOGGER.info("Settings file %s holds a plaintext API key; it will be encrypted on next save", self._path)
            return str(legacy)
        return ""

    def _read(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload


def _known(values: Mapping[str, Any]) -> Dict[str, Any]:
    names = {item.name for item in fields(Settings)}
    return {key: value for key, value in values.items() if key in names and value is not None}


def _settings_from(payload: Mapping[str, Any]) -> Settings:
    try:
        return Settings(**_known(payload))
    except TypeError as exc:
        LOGGER.warning("Ignoring settings file with unexpected data: %s", exc)
        return Settings()


def _merge(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    changes = _known(overrides)
    if isinstance(changes.get("metadata"), Mapping):
        changes["metadata"] = {**settings.metadata, **changes["metadata"]}
    if not changes:
        return settings
    LOGGER.debug("Applying %s overrides: %s", source, sorted(changes))
    return replace(settings, **changes)


def _environment_overrides() -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for env_name, (field_name, convert) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            result[field_name] = convert(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: expected %s", env_name, raw, convert.__name__)
    return result


def redact_secret(value: str) -> str:
    """Mask all but the first and last two characters of *value*."""

    stripped = (value or "").strip()
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
