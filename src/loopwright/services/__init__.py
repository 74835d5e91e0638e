"""Service layer helpers (settings, telemetry, chat history storage)."""

from .settings import FernetSecretProvider, SecretVault, Settings, SettingsStore, redact_secret
from .telemetry import emit, register_event_listener, unregister_event_listener

__all__ = [
    "FernetSecretProvider",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "emit",
    "redact_secret",
    "register_event_listener",
    "unregister_event_listener",
]
