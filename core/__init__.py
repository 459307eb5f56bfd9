"""
AniSync Core Framework
Canonical models, transport, authentication and the sync orchestrator
shared by every service adapter.
"""

__version__ = "1.0.0"

from .logging_handler import setup_logging, QtLogHandler
from .settings_manager import SettingsManager
from .secure_storage import SecureStorage
from .api_client import ApiClient, ApiWorker
from .service_base import ServiceBase
from .service_registry import ServiceRegistry
from .event_bus import EventBus
from .auth import AuthController, AuthState
from .library import LocalLibrary, JsonLibraryStore
from .dispatch import InlineDispatcher, ThreadDispatcher, RetryPolicy, RequestTicket
from .orchestrator import SyncOrchestrator

__all__ = [
    'setup_logging',
    'QtLogHandler',
    'SettingsManager',
    'SecureStorage',
    'ApiClient',
    'ApiWorker',
    'ServiceBase',
    'ServiceRegistry',
    'EventBus',
    'AuthController',
    'AuthState',
    'LocalLibrary',
    'JsonLibraryStore',
    'InlineDispatcher',
    'ThreadDispatcher',
    'RetryPolicy',
    'RequestTicket',
    'SyncOrchestrator',
]
