"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

from cryptography.fernet import Fernet, InvalidToken
from jsonschema import Draft7Validator, ValidationError

from ..ai.orchestration.context_augmenter import DEFAULT_RAG_API_BASE_URL, DEFAULT_RAG_GROUPS

__all__ = [
    "Settings",
    "ModelSettings",
    "SettingsStore",
    "SecretVault",
    "DEFAULT_NATIVE_PROVIDERS",
    "DEFAULT_EXTERNAL_PROVIDERS",
    "parse_model_entries",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".chatstream"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATSTREAM_API_KEY": "api_key",
    "CHATSTREAM_BASE_URL": "base_url",
    "CHATSTREAM_MODEL": "model",
    "CHATSTREAM_ORGANIZATION": "organization",
    "CHATSTREAM_SELECTED_MODEL": "selected_chat_model",
    "CHATSTREAM_RAG_API_BASE_URL": "rag_api_base_url",
    "CHATSTREAM_FREE_TRIAL_STATUS_URL": "free_trial_status_url",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATSTREAM_DEBUG_LOGGING": "debug_logging",
    "CHATSTREAM_READ_RESPONSE_TTS": "read_response_tts",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATSTREAM_REQUEST_TIMEOUT": "request_timeout",
    "CHATSTREAM_TEMPERATURE": "temperature",
    "CHATSTREAM_RELAY_TIMEOUT": "relay_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATSTREAM_MAX_RETRIES": "max_retries",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"

DEFAULT_NATIVE_PROVIDERS: tuple[str, ...] = ("free-trial", "ollama")
DEFAULT_EXTERNAL_PROVIDERS: tuple[str, ...] = (
    "openai",
    "anthropic",
    "gemini",
    "bedrock",
    "azure",
    "cohere",
    "watsonx",
)

MODEL_ENTRY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "provider": {"type": "string", "minLength": 1},
        "model": {"type": "string", "minLength": 1},
        "api_base": {"type": ["string", "null"]},
        "api_key": {"type": "string"},
        _API_KEY_FIELD: {"type": "string"},
    },
    "additionalProperties": True,
}
_MODEL_VALIDATOR = Draft7Validator(MODEL_ENTRY_SCHEMA)


@dataclass(slots=True)
class ModelSettings:
    """One configured chat model."""

    title: str
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_base: str | None = None
    api_key: str = ""


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.2
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    models: list[ModelSettings] = field(default_factory=list)
    selected_chat_model: str | None = None
    native_providers: list[str] = field(default_factory=lambda: list(DEFAULT_NATIVE_PROVIDERS))
    external_providers: list[str] = field(default_factory=lambda: list(DEFAULT_EXTERNAL_PROVIDERS))
    read_response_tts: bool = False
    telemetry_opt_in: bool = False
    free_trial_status_url: str | None = None
    rag_api_base_url: str = DEFAULT_RAG_API_BASE_URL
    rag_default_groups: list[str] = field(default_factory=lambda: list(DEFAULT_RAG_GROUPS))
    rag_n_retrieve: int = 15
    rag_n_final: int = 10
    relay_timeout: float = 2.0
    relay_settle_delay: float = 0.1
    debug_logging: bool = False


class SecretProvider(ABC):
    """Interface for encrypting and decrypting sensitive strings."""

    name: str = "unknown"

    @abstractmethod
    def encrypt(self, secret: str) -> str:
        """Return an encoded representation of ``secret`` suitable for storage."""

    @abstractmethod
    def decrypt(self, token: str) -> str:
        """Return the plaintext representation of ``token``."""


class FernetSecretProvider(SecretProvider):
    """Secret provider that uses a symmetric Fernet key stored on disk."""

    name = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return token.decode("ascii")

    def decrypt(self, token: str) -> str:
        raw = self._get_fernet().decrypt(token.encode("ascii"))
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            key = self._load_or_create_key()
            self._fernet = Fernet(key)
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".keytmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SecretVault:
    """Encrypts and decrypts sensitive strings for settings persistence."""

    def __init__(
        self,
        *,
        key_path: Path | None = None,
        provider: SecretProvider | None = None,
    ) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._provider = provider or FernetSecretProvider(self._key_path)

    @property
    def strategy(self) -> str:
        return self._provider.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        payload = self._provider.encrypt(secret)
        return f"{self._provider.name}:{payload}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, payload = self._split_token(token)
        if prefix not in (None, self._provider.name):
            LOGGER.warning("Unknown secret token prefix %s; returning ciphertext.", prefix)
            return token
        try:
            return self._provider.decrypt(payload)
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    @staticmethod
    def _split_token(token: str) -> tuple[str | None, str]:
        if ":" not in token:
            return None, token
        prefix, payload = token.split(":", 1)
        return (prefix or None), payload


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        key_path = self._path.with_suffix(".key")
        self._vault = vault or SecretVault(key_path=key_path)

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    @property
    def vault(self) -> SecretVault:
        """Return the secret vault managing API key encryption."""

        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False

        if payload:
            plaintext_key, migrated = self._decrypt_api_key(
                payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None)
            )
            needs_migration = migrated
            data = _filter_fields(payload)
            if "models" in data:
                models, models_migrated = self._load_models(data["models"])
                data["models"] = models
                needs_migration = needs_migration or models_migrated
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if plaintext_key:
                settings = replace(settings, api_key=plaintext_key)
            LOGGER.debug(
                "Settings loaded from %s: %d model(s), selected=%s",
                self._path,
                len(settings.models),
                settings.selected_chat_model,
            )

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - read-only settings directory
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s (%d model(s))", self._path, len(settings.models))
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        ciphertext = self._encrypt_secret_value(api_key, field_name="API key")
        if ciphertext:
            data[_API_KEY_FIELD] = ciphertext
        serialized_models: list[dict[str, Any]] = []
        for entry in data.get("models") or []:
            model_key = entry.pop("api_key", "") or ""
            token = self._encrypt_secret_value(model_key, field_name=f"API key for {entry.get('title')}")
            if token:
                entry[_API_KEY_FIELD] = token
            serialized_models.append(entry)
        data["models"] = serialized_models
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            return json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}

    def _load_models(self, payload: Any) -> tuple[list[ModelSettings], bool]:
        migrated = False
        decrypted: list[dict[str, Any]] = []
        for entry in payload if isinstance(payload, list) else []:
            if not isinstance(entry, Mapping):
                continue
            candidate = dict(entry)
            ciphertext = candidate.pop(_API_KEY_FIELD, None)
            legacy_plaintext = candidate.pop("api_key", None)
            key, entry_migrated = self._decrypt_api_key(ciphertext, legacy_plaintext)
            migrated = migrated or entry_migrated
            candidate["api_key"] = key
            decrypted.append(candidate)
        return parse_model_entries(decrypted), migrated

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged_metadata = dict(settings.metadata or {})
            merged_metadata.update(metadata_override)
            filtered["metadata"] = merged_metadata
        if "models" in filtered:
            filtered["models"] = parse_model_entries(filtered["models"])
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings

    def _encrypt_secret_value(self, secret: str, *, field_name: str) -> str | None:
        if not secret:
            return None
        try:
            token = self._vault.encrypt(secret)
            LOGGER.debug("%s encrypted via %s backend", field_name, self._vault.strategy)
            return token
        except Exception as exc:  # pragma: no cover - extremely rare
            LOGGER.warning("Failed to encrypt %s: %s", field_name, exc)
            return None

    def _decrypt_api_key(
        self, ciphertext: str | None, legacy_plaintext: str | None
    ) -> tuple[str, bool]:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return "", False
        if legacy_plaintext:
            LOGGER.info("Detected legacy plaintext API key; migrating to encrypted storage.")
            return legacy_plaintext, True
        return "", False


def parse_model_entries(entries: Iterable[Any]) -> list[ModelSettings]:
    """Validate model entries, skipping (and logging) invalid ones."""

    allowed = {field.name for field in fields(ModelSettings)}
    models: list[ModelSettings] = []
    for index, entry in enumerate(entries or ()):
        if isinstance(entry, ModelSettings):
            models.append(entry)
            continue
        try:
            _MODEL_VALIDATOR.validate(entry)
        except ValidationError as error:
            location = "/".join(str(part) for part in error.absolute_path) or "entry"
            LOGGER.warning("Skipping invalid model entry %s (%s): %s", index, location, error.message)
            continue
        data = {key: value for key, value in dict(entry).items() if key in allowed}
        models.append(ModelSettings(**data))
    return models


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)} - {"api_key"}
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key not in allowed:
            continue
        result[key] = value
    return result


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
