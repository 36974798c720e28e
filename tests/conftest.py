"""Shared pytest fixtures for engine tests."""
from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from labby import models
from labby.catalog import ServiceCatalog
from labby.cleanup import AdminCleanup, CleanupOrchestrator
from labby.config import Settings
from labby.errors import ServiceError
from labby.lifecycle import LabService
from labby.progress import ProgressTracker
from labby.repository import SqlLabRepository
from labby.schemas import Credential, LabTemplate, ServiceConfig, ServiceReference
from labby.services.base import Service, StepStatus
from labby.services.registry import ServiceDispatcher, ServiceRegistry


class FakeService(Service):
    """In-memory service recording every setup and cleanup call."""

    def __init__(self, name: str, steps: list[str] | None = None):
        self._name = name
        self._steps = steps or ["Step One", "Step Two"]
        self.fail_setup = False
        self.fail_cleanup = False
        self.setup_calls: list[str] = []
        self.cleanup_calls: list[str] = []
        self.cleanup_contexts = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def setup_steps(self) -> list[str]:
        return list(self._steps)

    def expected_identifiers(self, lab_id: str) -> dict[str, str]:
        return {f"{self._name}_resource": f"lab-{lab_id}"}

    async def execute_setup(self, ctx) -> None:
        self.setup_calls.append(ctx.lab_id)
        for step in self._steps:
            ctx.report(step, StepStatus.RUNNING, f"{step} started")
            if self.fail_setup:
                ctx.report(step, StepStatus.FAILED, "boom")
                raise ServiceError(f"{self._name} exploded", self._name, ctx.lab_id)
            ctx.report(step, StepStatus.COMPLETED)
        ctx.lab.service_data[f"{self._name}_resource"] = f"lab-{ctx.lab_id}"
        ctx.add_credential(Credential(label=self._name, username="user", password="secret"))

    async def execute_cleanup(self, ctx) -> None:
        self.cleanup_calls.append(ctx.lab_id)
        self.cleanup_contexts.append(ctx)
        if self.fail_cleanup:
            raise ServiceError(f"{self._name} cleanup exploded", self._name, ctx.lab_id)


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, autoflush=False, autocommit=False)


@pytest.fixture(scope="function")
def repository(session_factory) -> SqlLabRepository:
    return SqlLabRepository(session_factory)


@pytest.fixture(scope="function")
def test_settings() -> Settings:
    return Settings(
        sweep_enabled=False,
        service_max_retries=0,
        cleanup_stop_on_first_error=False,
        cleanup_failed_service_on_setup_error=True,
        progress_max_log_entries=50,
    )


@pytest.fixture(scope="function")
def fake_services() -> dict[str, FakeService]:
    return {name: FakeService(name) for name in ("alpha", "beta", "gamma")}


@pytest.fixture(scope="function")
def catalog() -> ServiceCatalog:
    """Catalog with one config per fake service and a three-service template."""
    catalog = ServiceCatalog()
    for name in ("alpha", "beta", "gamma"):
        catalog.add_service_config(ServiceConfig(id=f"{name}-config", name=name.title(), type=name))
    catalog.add_template(LabTemplate(
        id="abc",
        name="ABC Lab",
        expiration_duration="2h",
        services=[
            ServiceReference(name="Alpha", service_id="alpha-config", description="First"),
            ServiceReference(name="Beta", service_id="beta-config", description="Second"),
            ServiceReference(name="Gamma", service_id="gamma-config", description="Third"),
        ],
    ))
    return catalog


@pytest.fixture(scope="function")
def registry(fake_services) -> ServiceRegistry:
    registry = ServiceRegistry()
    for service in fake_services.values():
        registry.register(service)
    return registry


@pytest.fixture(scope="function")
def dispatcher(registry, catalog) -> ServiceDispatcher:
    return ServiceDispatcher(registry, catalog)


@pytest.fixture(scope="function")
def tracker(test_settings) -> ProgressTracker:
    return ProgressTracker(test_settings.progress_max_log_entries)


@pytest.fixture(scope="function")
def orchestrator(registry, dispatcher, catalog, test_settings) -> CleanupOrchestrator:
    return CleanupOrchestrator(registry, dispatcher, catalog, test_settings)


@pytest.fixture(scope="function")
def lab_service(repository, catalog, dispatcher, tracker, orchestrator, test_settings) -> LabService:
    return LabService(repository, catalog, dispatcher, tracker, orchestrator, test_settings)


@pytest.fixture(scope="function")
def admin_cleanup(orchestrator, repository) -> AdminCleanup:
    return AdminCleanup(orchestrator, repository)


@pytest.fixture(scope="function")
def make_service():
    """Factory for additional fake services."""
    return FakeService
