"""Provisioning pipeline: runs a lab's templated services in order.

One pipeline run is started per lab as its own asyncio task. Services are
set up strictly in template order; the first failing setup stops the run
and leaves the lab in error. A config ID is recorded in the lab's
``used_services`` before its setup starts so cleanup covers whatever was
attempted.
"""
from __future__ import annotations

import asyncio
import logging
from functools import partial

from sqlalchemy.exc import SQLAlchemyError

from labby.catalog import ServiceCatalog
from labby.config import Settings, settings as default_settings
from labby.errors import (
    ConfigurationError,
    CredentialPersistenceError,
    InvalidTransitionError,
    LabNotFoundError,
)
from labby.logging_config import set_lab_id
from labby.progress import ProgressTracker
from labby.repository import LabRepository
from labby.schemas import Credential, Lab, LabStatus, LabTemplate, ServiceConfig, ServiceReference
from labby.services.base import CleanupContext, Service, SetupContext
from labby.services.registry import ServiceDispatcher
from labby.state import transition

logger = logging.getLogger(__name__)

SUCCESS_LOG = "Lab setup completed successfully!"
FAILURE_LOG = "Lab setup failed due to service errors"


class ProvisioningPipeline:
    """Drives setup of every service in a lab's template."""

    def __init__(
        self,
        repository: LabRepository,
        catalog: ServiceCatalog,
        dispatcher: ServiceDispatcher,
        tracker: ProgressTracker,
        lock: asyncio.Lock,
        settings: Settings | None = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.lock = lock
        self.settings = settings or default_settings

    async def run(self, lab: Lab) -> None:
        """Provision ``lab``; failures end in error status, never propagate."""
        set_lab_id(lab.id)
        try:
            await self._run(lab)
        except Exception as e:
            logger.exception(f"Unexpected error provisioning lab {lab.id}: {e}")
            self.tracker.fail_progress(lab.id, str(e))
            await self._finish(lab, LabStatus.ERROR)

    async def _run(self, lab: Lab) -> None:
        if not lab.template_id:
            self.tracker.add_log(lab.id, "No template, nothing to provision")
            await self._succeed(lab)
            return

        template = self.catalog.get_template(lab.template_id)
        if template is None:
            message = f"Template not found: {lab.template_id}"
            logger.error(f"{message} (lab {lab.id})")
            self.tracker.fail_progress(lab.id, message)
            await self._finish(lab, LabStatus.ERROR)
            return

        self.tracker.add_log(lab.id, f"Provisioning lab from template: {template.name}")
        planned = self._register_services(lab, template)

        for ref, config, service in planned:
            if lab.status != LabStatus.PROVISIONING:
                logger.info(f"Lab {lab.id} is {lab.status.value}, not setting up remaining services")
                return
            error = await self._setup_service(lab, ref, config, service)
            if error is not None:
                self.tracker.fail_progress(lab.id, error)
                self.tracker.add_log(lab.id, FAILURE_LOG)
                await self._finish(lab, LabStatus.ERROR)
                return

        await self._succeed(lab)

    def _register_services(
        self, lab: Lab, template: LabTemplate,
    ) -> list[tuple[ServiceReference, ServiceConfig, Service]]:
        """Resolve references and register their steps so pollers see all services up front."""
        planned = []
        for ref in template.services:
            config = self.catalog.get_service_config(ref.service_id)
            if config is None or not config.is_active:
                logger.warning(f"Service configuration not found: {ref.service_id}")
                self.tracker.add_log(lab.id, f"Service configuration not found: {ref.service_id}")
                continue
            service = self.dispatcher.by_type(config.type)
            if service is None:
                logger.warning(f"No service implementation for type {config.type} ({ref.service_id})")
                self.tracker.add_log(lab.id, f"Service type not available: {config.type}")
                continue
            self.tracker.add_service(lab.id, ref.name, ref.description or config.description, service.setup_steps)
            planned.append((ref, config, service))
        return planned

    async def _setup_service(
        self, lab: Lab, ref: ServiceReference, config: ServiceConfig, service: Service,
    ) -> str | None:
        """Run one service's setup; returns an error message on failure."""
        params = None
        try:
            async with self.lock:
                lab.used_services.append(config.id)
                self.repository.update_lab(lab)

            self.tracker.add_log(lab.id, f"Setting up service: {ref.name} ({config.type})")
            configured = self.dispatcher.configure(config)
            if configured is None:
                raise ConfigurationError(f"No service implementation for type {config.type}")
            service, params = configured
            ctx = SetupContext(
                lab=lab,
                params=params,
                add_credential=self._credential_recorder(lab),
                update_step=partial(self.tracker.update_service_step, lab.id, ref.name),
                timeout=self.settings.service_http_timeout,
            )
            await service.execute_setup(ctx)

            async with self.lock:
                self.repository.update_lab(lab)
        except Exception as e:
            logger.error(f"Failed to set up {ref.name} for lab {lab.id}: {e}")
            self.tracker.add_log(lab.id, f"Failed to set up {ref.name}: {e}")
            await self._compensate(lab, config, service, params)
            return f"{ref.name}: {e}"

        logger.info(f"Service {ref.name} set up for lab {lab.id}")
        return None

    async def _compensate(self, lab: Lab, config: ServiceConfig, service: Service, params) -> None:
        """Undo a failed setup and drop it from used_services once nothing is left behind.

        The failed entry is kept when it is the only one, since an empty
        record would make a later cleanup fall back to every service.
        """
        compensated = params is None
        if params is not None and self.settings.cleanup_failed_service_on_setup_error:
            try:
                await service.execute_cleanup(CleanupContext(lab, params, self.settings.service_http_timeout))
                compensated = True
                self.tracker.add_log(lab.id, f"Removed partial resources of {config.name}")
            except Exception as e:
                logger.warning(f"Cleanup after failed setup of {config.id} failed for lab {lab.id}: {e}")

        if not compensated or len(lab.used_services) <= 1:
            return
        async with self.lock:
            if lab.used_services and lab.used_services[-1] == config.id:
                lab.used_services.pop()

    def _credential_recorder(self, lab: Lab):
        def add_credential(credential: Credential) -> None:
            credential.lab_id = lab.id
            if credential.expires_at is None:
                credential.expires_at = lab.ends_at
            try:
                stored = self.repository.create_credential(credential)
            except SQLAlchemyError as e:
                raise CredentialPersistenceError(
                    f"Failed to store credential {credential.label}: {e}", lab.id,
                ) from e
            lab.credentials.append(stored)
        return add_credential

    async def _succeed(self, lab: Lab) -> None:
        if await self._finish(lab, LabStatus.READY):
            self.tracker.complete_progress(lab.id)
            self.tracker.add_log(lab.id, SUCCESS_LOG)
            logger.info(f"Lab {lab.id} is ready")

    async def _finish(self, lab: Lab, status: LabStatus) -> bool:
        """Apply a terminal status; returns False if the lab moved on meanwhile."""
        async with self.lock:
            try:
                transition(lab, status)
            except InvalidTransitionError as e:
                logger.warning(f"Not marking lab {lab.id} {status.value}: {e}")
                return False
            try:
                self.repository.update_lab(lab)
            except LabNotFoundError:
                logger.warning(f"Lab {lab.id} was deleted while provisioning")
            except SQLAlchemyError as e:
                logger.error(f"Failed to persist status {status.value} for lab {lab.id}: {e}")
        return True
