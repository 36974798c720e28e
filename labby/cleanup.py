"""Cleanup orchestration.

Labs are cleaned up by invoking each service recorded in ``used_services``.
Labs without a usage record predate usage tracking and get every
registered service. By default every service is attempted and failures
are raised together as a CleanupError; ``cleanup_stop_on_first_error``
restores the old stop-at-first-failure ordering.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from labby.catalog import ServiceCatalog
from labby.config import Settings, settings as default_settings
from labby.errors import CleanupError, ConfigurationError, LabbyError
from labby.schemas import Lab, LabStatus, ServiceConfig
from labby.services.base import CleanupContext, Service
from labby.services.registry import ServiceDispatcher, ServiceRegistry
from labby.utils import strip_lab_prefix, utcnow

if TYPE_CHECKING:
    from labby.repository import LabRepository

logger = logging.getLogger(__name__)


class CleanupOrchestrator:
    """Invokes service cleanup for a lab."""

    def __init__(
        self,
        registry: ServiceRegistry,
        dispatcher: ServiceDispatcher,
        catalog: ServiceCatalog,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.catalog = catalog
        self.settings = settings or default_settings

    def default_config(self, service: Service) -> ServiceConfig | None:
        """First active config of the service's type, used when none is recorded."""
        for config in self.catalog.configs_of_type(service.name):
            if config.is_active:
                return config
        return None

    def _targets(self, lab: Lab) -> list[tuple[str, Service, ServiceConfig]]:
        if not lab.used_services:
            logger.info(f"Lab {lab.id} has no service usage record, cleaning up all registered services")
            targets = []
            for service in self.registry.all():
                config = self.default_config(service)
                if config is None:
                    logger.info(f"No configuration for {service.name}, nothing to clean up")
                    continue
                targets.append((service.name, service, config))
            return targets

        targets = []
        for config_id in lab.used_services:
            config = self.catalog.get_service_config(config_id)
            service = self.dispatcher.by_type(config.type) if config else None
            if config is None or service is None:
                logger.warning(f"Service not found for config {config_id}, skipping cleanup")
                continue
            targets.append((config_id, service, config))
        return targets

    async def cleanup_lab(self, lab: Lab | None) -> None:
        """Clean up every service recorded for ``lab``.

        Raises:
            LabbyError: If no lab is given
            CleanupError: If one or more services failed
        """
        if lab is None:
            raise LabbyError("Cleanup requires a lab")

        failures: list[tuple[str, Exception]] = []
        for label, service, config in self._targets(lab):
            try:
                configured = self.dispatcher.configure(config)
                if configured is None:
                    raise ConfigurationError(f"No service implementation for type {config.type}")
                _, params = configured
                await service.execute_cleanup(CleanupContext(lab, params, self.settings.service_http_timeout))
                logger.info(f"Cleaned up {label} for lab {lab.id}")
            except Exception as e:
                logger.error(f"Failed to clean up {label} for lab {lab.id}: {e}")
                if self.settings.cleanup_stop_on_first_error:
                    raise CleanupError(lab.id, [(label, e)]) from e
                failures.append((label, e))

        if failures:
            raise CleanupError(lab.id, failures)


class AdminCleanup:
    """Operator-triggered cleanup by lab ID, usable when no lab record exists.

    Resource names are synthesized from the lab ID using each service's
    naming convention; identifiers stored on an existing lab take
    precedence.
    """

    def __init__(
        self,
        orchestrator: CleanupOrchestrator,
        repository: LabRepository | None = None,
    ):
        self.orchestrator = orchestrator
        self.repository = repository

    def synthetic_lab(self, lab_id: str, services: list[Service], used_services: list[str] | None = None) -> Lab:
        lab_id = strip_lab_prefix(lab_id)
        service_data: dict[str, str] = {}
        for service in services:
            service_data.update(service.expected_identifiers(lab_id))

        existing = self.repository.get_lab_by_id(lab_id) if self.repository else None
        if existing is not None:
            service_data.update(existing.service_data)

        now = utcnow()
        return Lab(
            id=lab_id,
            name=f"lab-{lab_id}",
            status=LabStatus.EXPIRED,
            owner_id=existing.owner_id if existing else "admin",
            started_at=existing.started_at if existing else now,
            ends_at=now,
            service_data=service_data,
            used_services=list(used_services or []),
        )

    async def cleanup_by_type(
        self,
        service_type: str,
        lab_id: str,
        params: dict[str, str] | None = None,
        identifiers: dict[str, str] | None = None,
    ) -> None:
        """Clean up one service type for a lab.

        Args:
            service_type: Registered service name
            lab_id: Bare lab ID, with or without the "lab-" prefix
            params: Connection parameters; defaults to the first active
                config of that type
            identifiers: Service data overriding the synthesized names
        """
        service = self.orchestrator.registry.get(service_type)
        if service is None:
            raise ConfigurationError(f"Unknown service type: {service_type}")
        if params is None:
            config = self.orchestrator.default_config(service)
            if config is None:
                raise ConfigurationError(f"No configuration available for {service_type}")
        else:
            config = ServiceConfig(id=f"admin-{service_type}", name=service_type, type=service_type, params=params)
        _, parsed = self.orchestrator.dispatcher.configure(config)

        lab = self.synthetic_lab(lab_id, [service])
        lab.service_data.update(identifiers or {})
        logger.info(f"Admin cleanup of {service_type} for lab {lab.id}")
        await service.execute_cleanup(CleanupContext(
            lab,
            parsed,
            self.orchestrator.settings.service_http_timeout,
        ))

    async def cleanup_by_config(self, config_id: str, lab_id: str) -> None:
        """Clean up the service behind one config for a lab."""
        config = self.orchestrator.catalog.get_service_config(config_id)
        service = self.orchestrator.dispatcher.by_config_id(config_id)
        if config is None or service is None:
            raise ConfigurationError(f"Service configuration not found: {config_id}")
        lab = self.synthetic_lab(lab_id, [service], used_services=[config_id])
        logger.info(f"Admin cleanup of {config_id} for lab {lab.id}")
        await self.orchestrator.cleanup_lab(lab)

    async def cleanup_all_types(self, lab_id: str) -> dict[str, str | None]:
        """Try every registered service type; maps type to error message or None."""
        results: dict[str, str | None] = {}
        for service in self.orchestrator.registry.all():
            try:
                await self.cleanup_by_type(service.name, lab_id)
                results[service.name] = None
            except Exception as e:
                logger.warning(f"Admin cleanup of {service.name} for lab {lab_id} failed: {e}")
                results[service.name] = str(e)
        return results
