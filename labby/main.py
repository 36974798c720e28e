"""Engine wiring and process entry point."""
from __future__ import annotations

import asyncio
import logging
from functools import partial

from labby.catalog import ServiceCatalog
from labby.cleanup import AdminCleanup, CleanupOrchestrator
from labby.config import Settings, settings
from labby.lifecycle import LabService
from labby.logging_config import setup_logging
from labby.progress import ProgressTracker
from labby.repository import LabRepository, SqlLabRepository
from labby.schemas import LabStatus
from labby.services.allocator import TagAllocator
from labby.services.registry import ServiceDispatcher, build_registry
from labby.services.terraform_cloud import tags_in_use
from labby.tasks import TaskRunner
from labby.tasks.expiry import expiry_sweep_monitor

logger = logging.getLogger(__name__)


def build_lab_service(
    config: Settings,
    repository: LabRepository,
    catalog: ServiceCatalog | None = None,
    transport=None,
) -> LabService:
    """Assemble the engine from its collaborators."""
    if catalog is None:
        catalog = ServiceCatalog()
        catalog.load(config.service_configs_dir, config.templates_dir)
        catalog.sync_to_repository(repository)

    allocator = TagAllocator(seed=lambda: tags_in_use(
        repository.get_labs_by_status(LabStatus.PROVISIONING, LabStatus.READY, LabStatus.ERROR)
    ))
    registry = build_registry(config, allocator, transport=transport)
    dispatcher = ServiceDispatcher(registry, catalog)
    tracker = ProgressTracker(config.progress_max_log_entries)
    orchestrator = CleanupOrchestrator(registry, dispatcher, catalog, config)
    return LabService(repository, catalog, dispatcher, tracker, orchestrator, config)


def build_admin_cleanup(lab_service: LabService) -> AdminCleanup:
    return AdminCleanup(lab_service.orchestrator, lab_service.repository)


async def run() -> None:
    from labby.db import SessionLocal, init_db

    setup_logging()
    init_db()
    lab_service = build_lab_service(settings, SqlLabRepository(SessionLocal))

    runner = TaskRunner()
    if settings.sweep_enabled:
        runner.register("expiry-sweep", partial(expiry_sweep_monitor, lab_service))
    runner.start()
    logger.info("Lab engine running")
    try:
        await asyncio.Event().wait()
    finally:
        await runner.stop()


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Lab engine stopped")


if __name__ == "__main__":
    main()
