"""Service layer helpers (settings persistence)."""

from .secrets import SecretVault
from .settings import Settings, SettingsStore

__all__ = ["SecretVault", "Settings", "SettingsStore"]
