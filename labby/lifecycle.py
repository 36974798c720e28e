"""Lab lifecycle: creation, lookup, stop and delete.

``LabService`` owns the lock that serializes changes to a lab's status,
service data and usage record. The provisioning pipeline, owner actions
and the expiry sweeper all go through it. Labs with a pipeline still
running are kept in memory so every writer sees the same object.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from labby.catalog import ServiceCatalog
from labby.cleanup import CleanupOrchestrator
from labby.config import Settings, settings as default_settings
from labby.errors import (
    InvalidDurationError,
    LabbyError,
    LabNotFoundError,
    ServiceUnavailableError,
    TemplateNotFoundError,
)
from labby.progress import LabProgress, ProgressTracker
from labby.provisioning import ProvisioningPipeline
from labby.repository import LabRepository
from labby.schemas import Lab, LabStatus, LabTemplate, ServiceUsage
from labby.services.registry import ServiceDispatcher
from labby.state import transition
from labby.utils import generate_lab_id, utcnow

logger = logging.getLogger(__name__)


class LabService:
    """Entry point for everything that changes a lab."""

    def __init__(
        self,
        repository: LabRepository,
        catalog: ServiceCatalog,
        dispatcher: ServiceDispatcher,
        tracker: ProgressTracker,
        orchestrator: CleanupOrchestrator,
        settings: Settings | None = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.orchestrator = orchestrator
        self.settings = settings or default_settings
        self.lock = asyncio.Lock()
        self.pipeline = ProvisioningPipeline(
            repository, catalog, dispatcher, tracker, self.lock, self.settings,
        )
        # Labs whose pipeline is still running, by ID
        self._active: dict[str, Lab] = {}
        self._tasks: set[asyncio.Task] = set()

    # Creation

    async def create_lab(self, name: str, owner_id: str, duration_minutes: int) -> Lab:
        """Create an ad hoc lab without services.

        Raises:
            InvalidDurationError: If the duration is outside the allowed range
        """
        if not self.settings.min_lab_duration <= duration_minutes <= self.settings.max_lab_duration:
            raise InvalidDurationError(
                f"Duration must be between {self.settings.min_lab_duration} and "
                f"{self.settings.max_lab_duration} minutes"
            )
        now = utcnow()
        lab = Lab(
            id=generate_lab_id(),
            name=name,
            owner_id=owner_id,
            started_at=now,
            ends_at=now + timedelta(minutes=duration_minutes),
            created_at=now,
            updated_at=now,
        )
        async with self.lock:
            return self._start(lab)

    async def create_lab_from_template(self, template_id: str, owner_id: str) -> Lab:
        """Create a lab from a template and start provisioning it.

        Raises:
            TemplateNotFoundError: If the template does not exist
            ServiceUnavailableError: If a referenced service cannot take another lab
        """
        template = self.catalog.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template not found: {template_id}")

        lab_id = generate_lab_id()
        now = utcnow()
        lab = Lab(
            id=lab_id,
            name=f"lab-{lab_id}",
            owner_id=owner_id,
            started_at=now,
            ends_at=now + template.duration,
            created_at=now,
            updated_at=now,
            template_id=template.id,
        )
        async with self.lock:
            for ref in template.services:
                self.check_service_availability(ref.service_id, template.duration)
            return self._start(lab)

    def _start(self, lab: Lab) -> Lab:
        """Persist a new lab and launch its pipeline. Caller holds the lock."""
        self.tracker.init_progress(lab.id)
        stored = self.repository.create_lab(lab)
        lab.created_at = stored.created_at
        self._active[lab.id] = lab
        task = asyncio.create_task(self._provision(lab))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Created lab {lab.id} for owner {lab.owner_id} (template: {lab.template_id or 'none'})")
        return lab.model_copy(deep=True)

    async def _provision(self, lab: Lab) -> None:
        try:
            await self.pipeline.run(lab)
        finally:
            self._active.pop(lab.id, None)

    async def wait_for_provisioning(self) -> None:
        """Wait until every running pipeline has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Reads

    def _overlay(self, labs: list[Lab]) -> list[Lab]:
        return [
            self._active[lab.id].model_copy(deep=True) if lab.id in self._active else lab
            for lab in labs
        ]

    def get_lab(self, lab_id: str) -> Lab:
        """Current state of a lab.

        Raises:
            LabNotFoundError: If no such lab exists
        """
        live = self._active.get(lab_id)
        if live is not None:
            return live.model_copy(deep=True)
        lab = self.repository.get_lab_by_id(lab_id)
        if lab is None:
            raise LabNotFoundError(f"Lab {lab_id} not found", lab_id)
        return lab

    def get_labs_by_owner(self, owner_id: str) -> list[Lab]:
        return self._overlay(self.repository.get_labs_by_owner_id(owner_id))

    def get_all_labs(self) -> list[Lab]:
        return self._overlay(self.repository.get_all_labs())

    def get_progress(self, lab_id: str) -> LabProgress | None:
        return self.tracker.get_progress(lab_id)

    def _resolve(self, lab_id: str) -> Lab:
        """The live lab object if provisioning, else the stored one."""
        live = self._active.get(lab_id)
        if live is not None:
            return live
        lab = self.repository.get_lab_by_id(lab_id)
        if lab is None:
            raise LabNotFoundError(f"Lab {lab_id} not found", lab_id)
        return lab

    # Stop / delete

    async def _cleanup(self, lab: Lab) -> None:
        try:
            await self.orchestrator.cleanup_lab(lab)
        except LabbyError as e:
            logger.error(f"Cleanup failed for lab {lab.id}: {e}")

    async def stop_lab(self, lab_id: str) -> Lab:
        """End a lab now: expire it and clean up its services."""
        lab = self._resolve(lab_id)
        async with self.lock:
            transition(lab, LabStatus.EXPIRED)
            lab.ends_at = utcnow()

        await self._cleanup(lab)

        async with self.lock:
            lab = self.repository.update_lab(lab)
        logger.info(f"Stopped lab {lab_id}")
        return lab

    async def expire_lab(self, lab_id: str) -> Lab:
        """Clean up a lab whose time has run out and mark it expired."""
        lab = self._resolve(lab_id)
        # Expired before cleanup so a running pipeline stops adding services
        async with self.lock:
            transition(lab, LabStatus.EXPIRED)

        await self._cleanup(lab)
        self.tracker.cleanup_progress(lab_id)

        async with self.lock:
            lab = self.repository.update_lab(lab)
        logger.info(f"Expired lab {lab_id}")
        return lab

    async def delete_lab(self, lab_id: str) -> None:
        """Clean up a lab's services and remove it; cleanup failures do not block deletion."""
        lab = self._resolve(lab_id)
        if lab_id in self._active:
            async with self.lock:
                transition(lab, LabStatus.EXPIRED)

        await self._cleanup(lab)
        self.tracker.cleanup_progress(lab_id)

        async with self.lock:
            self.repository.delete_lab(lab_id)
            self._active.pop(lab_id, None)
        logger.info(f"Deleted lab {lab_id}")

    # Service limits

    def _template_services(self, template_id: str) -> set[str]:
        template: LabTemplate | None = self.catalog.get_template(template_id) if template_id else None
        return {ref.service_id for ref in template.services} if template else set()

    def get_service_usage(self, service_id: str) -> ServiceUsage:
        """Count provisioning or ready labs using a service config."""
        labs = self._overlay(self.repository.get_labs_by_status(LabStatus.PROVISIONING, LabStatus.READY))
        active = 0
        for lab in labs:
            if lab.status not in (LabStatus.PROVISIONING, LabStatus.READY):
                continue
            # Provisioning labs count for every service their template will set up
            if service_id in lab.used_services or (
                lab.status == LabStatus.PROVISIONING and service_id in self._template_services(lab.template_id)
            ):
                active += 1
        limit = self.catalog.get_service_limit(service_id)
        return ServiceUsage(
            service_id=service_id,
            active_labs=active,
            max_labs=limit.max_labs if limit else None,
        )

    def check_service_availability(self, service_id: str, duration: timedelta | None = None) -> None:
        """Raise ServiceUnavailableError if a service cannot take another lab."""
        config = self.catalog.get_service_config(service_id)
        if config is None:
            raise ServiceUnavailableError(f"Service configuration not found: {service_id}", service_id)
        if not config.is_active:
            raise ServiceUnavailableError(f"Service {config.name} is not active", service_id)

        limit = self.catalog.get_service_limit(service_id)
        if limit is None:
            return
        usage = self.get_service_usage(service_id)
        if usage.active_labs >= limit.max_labs:
            raise ServiceUnavailableError(
                f"Service {config.name} has reached its limit of {limit.max_labs} active labs",
                service_id,
            )
        if duration is not None and duration > timedelta(minutes=limit.max_duration):
            raise ServiceUnavailableError(
                f"Service {config.name} allows labs of at most {limit.max_duration} minutes",
                service_id,
            )
