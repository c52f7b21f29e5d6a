"""Service layer helpers (settings, keepalive)."""

from .keepalive import KeepaliveFile, NullHeartbeat
from .settings import SecretVault, Settings, SettingsStore

__all__ = ["KeepaliveFile", "NullHeartbeat", "SecretVault", "Settings", "SettingsStore"]
