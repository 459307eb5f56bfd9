"""
Service adapter discovery, loading, and lookup.
"""

import os
import importlib
import inspect
import logging
from typing import List, Optional

from .errors import UnknownServiceError
from .service_base import ServiceBase

logger = logging.getLogger(__name__)

# Constructor keywords an adapter may accept, read from its settings namespace.
SERVICE_SETTINGS = ("client_id", "client_secret", "oauth_url")


class ServiceRegistry:
    """
    Handles discovery and instantiation of service adapters.
    Each adapter is configured from its own settings namespace.
    """

    def __init__(self, settings=None):
        """
        Args:
            settings: SettingsManager supplying '<service>/url' and related keys
        """
        self.services: List[ServiceBase] = []
        self.settings = settings

    def discover_services(self, service_dir: str):
        """
        Auto-discover adapters in the specified directory.
        Looks for modules named 'service_*.py' and loads them.

        Args:
            service_dir: Absolute file system path to the services directory
        """
        logger.info(f"🔍 Discovering services in '{service_dir}'...")

        if not os.path.isdir(service_dir):
            logger.warning(f"Service directory not found: {service_dir}")
            return

        service_files = sorted(
            filename for filename in os.listdir(service_dir)
            if filename.startswith("service_") and filename.endswith(".py")
        )
        logger.info(f"Found {len(service_files)} service files: {service_files}")

        package_name = os.path.basename(service_dir)
        for filename in service_files:
            module_name = f"{package_name}.{filename[:-3]}"
            try:
                self._load_service(module_name)
            except ImportError as e:
                logger.error(f"❌ Failed to load service {module_name}: {e}", exc_info=True)

        logger.info(f"✅ Loaded {len(self.services)} services successfully")

    def _load_service(self, module_name: str):
        """
        Loads a single adapter module and instantiates its ServiceBase classes.
        Args:
            module_name: Full module name (e.g., 'services.service_kitsu')
        """
        logger.debug(f"Loading service module: {module_name}")
        module = importlib.import_module(module_name)

        service_classes = [
            obj for _, obj in inspect.getmembers(module, inspect.isclass)
            if issubclass(obj, ServiceBase) and obj is not ServiceBase
            and not inspect.isabstract(obj) and obj.__module__ == module.__name__
        ]
        if not service_classes:
            logger.warning(f"No ServiceBase subclass found in {module_name}")
            return

        for service_class in service_classes:
            self.register(self._instantiate(service_class))

    def _instantiate(self, service_class) -> ServiceBase:
        """Builds an adapter with the keyword arguments its constructor accepts."""
        service = service_class()
        if self.settings is None:
            return service
        name = service.get_name()
        accepted = inspect.signature(service_class.__init__).parameters
        kwargs = {}
        url = self.settings.get_service_setting(name, "url", "")
        if url:
            kwargs["base_url"] = url
        for key in SERVICE_SETTINGS:
            value = self.settings.get_service_setting(name, key, "")
            if value and key in accepted:
                kwargs[key] = value
        return service_class(**kwargs) if kwargs else service

    def register(self, service: ServiceBase):
        if self.get_service_or_none(service.get_name()) is not None:
            logger.warning(f"⚠️ Service {service.get_name()} is already registered, replacing it")
            self.services = [s for s in self.services if s.get_name() != service.get_name()]
        self.services.append(service)
        logger.info(f"✅ Loaded service: {service.get_display_name()} v{service.get_version()}")

    def get_all_services(self) -> List[ServiceBase]:
        return list(self.services)

    def get_service_or_none(self, name: str) -> Optional[ServiceBase]:
        name_lower = name.lower()
        for service in self.services:
            if service.get_name().lower() == name_lower:
                return service
        return None

    def get_service(self, name: str) -> ServiceBase:
        """
        Find a service by its name (case-insensitive).

        Raises:
            UnknownServiceError: If no adapter is registered under that name
        """
        service = self.get_service_or_none(name)
        if service is None:
            raise UnknownServiceError(f"Unknown service: {name} (available: {', '.join(self.names())})")
        return service

    def names(self) -> List[str]:
        return [s.get_name() for s in self.services]
