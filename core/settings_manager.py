# anisync/core/settings_manager.py
"""
Centralized settings management with per-service namespaces.
Secrets never go through here; they live in SecureStorage.
"""

from typing import Any, Optional

from PyQt6.QtCore import QSettings

# Application constants
APP_NAME = "AniSync"
APP_ORGANIZATION = "anisync"

DEFAULTS = {
    "active_service": "anilist",
    "request_timeout": 30,
    "retry/max_attempts": 4,
    "retry/backoff_base": 1.0,
    "retry/backoff_max": 60.0,
    "retry/rate_limit_cooldown": 60.0,
}


class SettingsManager:
    """
    Centralized settings management with per-service namespaces
    and type-safe access.
    """
    def __init__(self, path: Optional[str] = None):
        """
        Args:
            path: Optional INI file (portable installs, tests); the platform store otherwise
        """
        if path:
            self.qsettings = QSettings(path, QSettings.Format.IniFormat)
        else:
            self.qsettings = QSettings(APP_ORGANIZATION, APP_NAME)

    @staticmethod
    def _coerce(value: Any, default: Any) -> Any:
        """QSettings returns strings from INI files; follow the default's type."""
        if default is None or value is None or isinstance(value, type(default)):
            return value
        if isinstance(default, bool) and isinstance(value, str):
            return value.lower() == 'true'
        try:
            return type(default)(value)
        except (TypeError, ValueError):
            return default

    def get_service_setting(self, service_name: str, key: str, default: Any = None) -> Any:
        """
        Gets a namespaced setting for a service.
        Type is inferred from the default value.
        """
        value = self.qsettings.value(f"{service_name}/{key}", default)
        return self._coerce(value, default)

    def set_service_setting(self, service_name: str, key: str, value: Any):
        """
        Sets a namespaced setting for a service.
        """
        self.qsettings.setValue(f"{service_name}/{key}", value)

    def get_global_setting(self, key: str, default: Any = None) -> Any:
        """
        Gets a global (application-level) setting.
        Falls back to the application default when no default is given.
        """
        if default is None:
            default = DEFAULTS.get(key)
        value = self.qsettings.value(key, default)
        return self._coerce(value, default)

    def set_global_setting(self, key: str, value: Any):
        """
        Sets a global (application-level) setting.
        """
        self.qsettings.setValue(key, value)

    def has_any_settings(self) -> bool:
        """
        Check if any settings have been saved (for first-run detection).
        """
        return bool(self.qsettings.allKeys())

    def sync(self):
        self.qsettings.sync()
