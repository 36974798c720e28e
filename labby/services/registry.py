"""Service registry and type dispatcher.

The registry maps a service's self-reported name to its instance. The
dispatcher resolves a ServiceConfig (by ID or by declared type) to the
registered implementation and validates the config's parameters for it.
Both are plain objects passed to the orchestrator rather than globals.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel

if TYPE_CHECKING:
    from labby.config import Settings
    from labby.schemas import ServiceConfig
    from labby.services.allocator import TagAllocator
    from labby.services.base import Service

logger = logging.getLogger(__name__)


class ServiceRegistry:
    """Name -> Service lookup table."""

    def __init__(self) -> None:
        self._services: dict[str, Service] = {}

    def register(self, service: Service) -> None:
        """Register a service under its name; a later registration wins."""
        if service.name in self._services:
            logger.warning(f"Service {service.name} registered twice, replacing previous instance")
        self._services[service.name] = service
        logger.info(f"Registered service: {service.name}")

    def get(self, name: str) -> Service | None:
        return self._services.get(name)

    def list_available(self) -> list[str]:
        return list(self._services.keys())

    def is_available(self, name: str) -> bool:
        return name in self._services

    def all(self) -> list[Service]:
        """All registered services in registration order."""
        return list(self._services.values())

    def reset(self) -> None:
        """Remove every registered service (mainly for testing)."""
        self._services = {}


class ConfigSource(Protocol):
    def get_service_config(self, config_id: str) -> ServiceConfig | None:
        ...


class ServiceDispatcher:
    """Resolves service configurations to their implementations."""

    def __init__(self, registry: ServiceRegistry, configs: ConfigSource):
        self.registry = registry
        self.configs = configs

    def by_type(self, service_type: str) -> Service | None:
        return self.registry.get(service_type)

    def by_config_id(self, config_id: str) -> Service | None:
        config = self.configs.get_service_config(config_id)
        if config is None:
            return None
        return self.by_type(config.type)

    def configure(self, config: ServiceConfig) -> tuple[Service, BaseModel] | None:
        """Resolve the implementation for ``config`` and validate its params.

        Returns None when no implementation handles the config's type.

        Raises:
            ConfigurationError: If the params do not satisfy the service
        """
        service = self.by_type(config.type)
        if service is None:
            return None
        return service, service.parse_params(config.params)


def build_registry(
    settings: Settings,
    allocator: TagAllocator,
    transport=None,
) -> ServiceRegistry:
    """Instantiate and register the services enabled in settings."""
    registry = ServiceRegistry()

    if settings.enable_palette_project:
        from labby.services.palette_project import PaletteProjectService
        registry.register(PaletteProjectService(transport=transport))

    if settings.enable_proxmox_user:
        from labby.services.proxmox_user import ProxmoxUserService
        registry.register(ProxmoxUserService(transport=transport))

    if settings.enable_terraform_cloud:
        from labby.services.terraform_cloud import TerraformCloudService
        registry.register(TerraformCloudService(allocator, transport=transport))

    if settings.enable_guacamole:
        from labby.services.guacamole import GuacamoleService
        registry.register(GuacamoleService(transport=transport))

    if settings.enable_palette_tenant:
        from labby.services.palette_tenant import PaletteTenantService
        registry.register(PaletteTenantService(transport=transport))

    logger.info(f"Service registration complete: {registry.list_available()}")
    return registry
