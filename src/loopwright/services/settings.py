"""Engine settings and their on-disk store.

Settings live in a JSON document (``~/.loopwright/settings.json`` by
default). The API key never touches that file in clear text: it is stored
as ``api_key_ciphertext`` in the form ``<backend>:<token>``, encrypted with
a Fernet key kept next to the settings file. Environment variables named
``LOOPWRIGHT_*`` win over both the file and runtime overrides.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "SecretProvider",
    "FernetSecretProvider",
    "environment_overrides",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path("~/.loopwright/settings.json")
SCHEMA_VERSION = 1
CIPHERTEXT_KEY = "api_key_ciphertext"


@dataclass(slots=True)
class Settings:
    """Everything needed to build a client and an agent."""

    # Provider
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    model: str = "gpt-4.1"
    organization: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    # Agent
    agent_name: str = "Assistant"
    system_prompt: str = "You are a helpful coding assistant."
    temperature: float | None = 0.2
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop_sequences: list[str] = field(default_factory=list)
    max_history_messages: int | None = 20
    maintain_history: bool = True
    enable_tools: bool = True
    tool_names: list[str] = field(default_factory=list)
    enable_streaming: bool = True
    include_usage: bool = True
    max_tool_iterations: int | None = None
    # Storage and diagnostics
    history_db_path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    debug_logging: bool = False

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(item.name for item in fields(cls))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Settings:
        """Build settings from *data*, ignoring keys that are not fields.

        A payload whose values cannot construct the dataclass yields defaults.
        """
        known = {key: value for key, value in data.items() if key in cls.field_names()}
        try:
            return cls(**known)
        except TypeError as exc:
            LOGGER.warning("Discarding malformed settings payload: %s", exc)
            return cls()

    def merged(self, updates: Mapping[str, Any]) -> Settings:
        """Return a copy with *updates* applied.

        Unknown keys and ``None`` values are skipped; ``metadata`` is merged
        into the existing mapping rather than replacing it.
        """
        names = self.field_names()
        changes = {key: value for key, value in updates.items() if key in names and value is not None}
        extra_metadata = changes.get("metadata")
        if isinstance(extra_metadata, Mapping):
            changes["metadata"] = {**self.metadata, **extra_metadata}
        return replace(self, **changes) if changes else self


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------
class SecretProvider(ABC):
    """A reversible cipher for short strings, identified by :attr:`name`."""

    name: str = "unknown"

    @abstractmethod
    def encrypt(self, secret: str) -> str: ...

    @abstractmethod
    def decrypt(self, token: str) -> str:
        """Raise :class:`ValueError` when *token* cannot be decrypted."""


class FernetSecretProvider(SecretProvider):
    """Fernet cipher whose key is generated lazily and kept in *key_path*."""

    name = "fernet"

    def __init__(self, key_path: Path) -> None:
        self.key_path = key_path
        self._cipher: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        return self._fernet().encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet().decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError(f"token does not match key {self.key_path}") from exc

    def _fernet(self) -> Fernet:
        if self._cipher is None:
            if self.key_path.exists():
                key = self.key_path.read_bytes().strip()
            else:
                key = Fernet.generate_key()
                _write_atomic(self.key_path, key, private=True)
                LOGGER.info("Generated settings key at %s", self.key_path)
            self._cipher = Fernet(key)
        return self._cipher


class SecretVault:
    """Wraps a :class:`SecretProvider` and tags tokens with its name."""

    def __init__(self, *, key_path: Path | None = None, provider: SecretProvider | None = None) -> None:
        if provider is None:
            provider = FernetSecretProvider(key_path or DEFAULT_SETTINGS_PATH.expanduser().with_suffix(".key"))
        self._provider = provider

    @property
    def strategy(self) -> str:
        return self._provider.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        return f"{self.strategy}:{self._provider.encrypt(secret)}"

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext for *token*.

        Untagged tokens are handed to the provider as-is. Tokens tagged for
        another backend are returned unchanged.
        """
        if not token:
            return ""
        backend, sep, payload = token.partition(":")
        if not sep:
            backend, payload = "", token
        if backend and backend != self.strategy:
            LOGGER.warning("Secret was stored by backend %r; leaving it encrypted", backend)
            return token
        return self._provider.decrypt(payload)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------
def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on", "debug"}


def _as_int(raw: str) -> int:
    return int(raw, 10)


_ENVIRONMENT: tuple[tuple[str, str, Callable[[str], Any]], ...] = (
    ("LOOPWRIGHT_API_KEY", "api_key", str),
    ("LOOPWRIGHT_BASE_URL", "base_url", str),
    ("LOOPWRIGHT_MODEL", "model", str),
    ("LOOPWRIGHT_ORGANIZATION", "organization", str),
    ("LOOPWRIGHT_ENABLE_STREAMING", "enable_streaming", _as_bool),
    ("LOOPWRIGHT_DEBUG_LOGGING", "debug_logging", _as_bool),
    ("LOOPWRIGHT_REQUEST_TIMEOUT", "request_timeout", float),
    ("LOOPWRIGHT_TEMPERATURE", "temperature", float),
    ("LOOPWRIGHT_MAX_HISTORY_MESSAGES", "max_history_messages", _as_int),
)


def environment_overrides(environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Collect typed overrides from ``LOOPWRIGHT_*`` variables.

    Values that fail to parse are logged and skipped.
    """
    source = os.environ if environ is None else environ
    found: Dict[str, Any] = {}
    for variable, field_name, parse in _ENVIRONMENT:
        raw = source.get(variable)
        if raw is None:
            continue
        try:
            found[field_name] = parse(raw)
        except ValueError:
            LOGGER.warning("Ignoring unparseable %s=%r", variable, raw)
    return found


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class SettingsStore:
    """Reads and writes :class:`Settings` as JSON, encrypting the API key."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = (path or DEFAULT_SETTINGS_PATH).expanduser()
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Return the stored settings with *overrides*, then the environment, applied.

        Older or plaintext documents are rewritten in the current format.
        A missing or unreadable file yields defaults.
        """
        document = self._read_document()
        settings, stale = self._decode(document)
        if stale:
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Could not upgrade %s: %s", self._path, exc)
        if overrides:
            settings = settings.merged(overrides)
        env = environment_overrides()
        if env:
            LOGGER.debug("Environment overrides: %s", sorted(env))
            settings = settings.merged(env)
        return settings

    def save(self, settings: Settings) -> Path:
        document = asdict(settings)
        secret = document.pop("api_key") or ""
        if secret:
            document[CIPHERTEXT_KEY] = self._vault.encrypt(secret)
        document["version"] = SCHEMA_VERSION
        document["secret_backend"] = self._vault.strategy
        _write_atomic(self._path, json.dumps(document, indent=2, sort_keys=True).encode("utf-8"))
        LOGGER.debug("Saved settings to %s", self._path)
        return self._path

    def _read_document(self) -> Dict[str, Any]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring unreadable settings file %s: %s", self._path, exc)
            return {}
        return document if isinstance(document, dict) else {}

    def _decode(self, document: Dict[str, Any]) -> tuple[Settings, bool]:
        if not document:
            return Settings(), False
        plaintext = document.pop("api_key", None)
        ciphertext = document.pop(CIPHERTEXT_KEY, None)
        stale = document.get("version") != SCHEMA_VERSION
        api_key = ""
        if ciphertext:
            try:
                api_key = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Stored API key could not be decrypted: %s", exc)
        elif plaintext:
            LOGGER.info("Encrypting plaintext API key found in %s", self._path)
            api_key = plaintext
            stale = True
        settings = Settings.from_mapping(document)
        if api_key:
            settings = replace(settings, api_key=api_key)
        return settings, stale


def _write_atomic(path: Path, data: bytes, *, private: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(path.name + ".tmp")
    staging.write_bytes(data)
    if private and os.name != "nt":
        os.chmod(staging, 0o600)
    staging.replace(path)


def redact_secret(value: str) -> str:
    """Mask all but the first and last two characters of *value*."""
    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]
