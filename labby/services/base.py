"""Abstract base class and contexts for lab service implementations.

A service provisions one category of external resource for a lab
(a hypervisor user, a cloud project, an IaC workspace, ...). The pipeline
calls ``execute_setup`` once per lab; cleanup may be called any number of
times, including for labs whose setup never finished.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable

from pydantic import BaseModel, ValidationError

from labby.errors import ConfigurationError
from labby.schemas import Credential, Lab


class ServiceType(str, Enum):
    """Service types a ServiceConfig may declare."""
    PALETTE_PROJECT = "palette_project"
    PALETTE_TENANT = "palette_tenant"
    PROXMOX_USER = "proxmox_user"
    TERRAFORM_CLOUD = "terraform_cloud"
    GUACAMOLE = "guacamole"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


CredentialCallback = Callable[[Credential], None]
StepCallback = Callable[[str, StepStatus, str], None]


@dataclass
class SetupContext:
    """Everything a service needs to set itself up for one lab.

    Attributes:
        lab: The live lab; services record cleanup identifiers in
            ``lab.service_data``
        params: Validated parameters from the service config
        add_credential: Persists a credential for the lab owner. Raises
            CredentialPersistenceError on storage failure, which must fail
            the setup call
        update_step: Optional step progress callback
        timeout: Per-request timeout for outgoing API calls (seconds)
    """
    lab: Lab
    params: BaseModel
    add_credential: CredentialCallback
    update_step: StepCallback | None = None
    timeout: float | None = None

    @property
    def lab_id(self) -> str:
        return self.lab.id

    @property
    def lab_name(self) -> str:
        return self.lab.name

    @property
    def owner_id(self) -> str:
        return self.lab.owner_id

    @property
    def duration(self) -> timedelta:
        return self.lab.ends_at - self.lab.started_at

    def report(self, step: str, status: StepStatus, message: str = "") -> None:
        if self.update_step is not None:
            self.update_step(step, status, message)


@dataclass
class CleanupContext:
    """Everything a service needs to tear down one lab's resources.

    Cleanup cannot rely on anything from the original setup call except
    what was written to ``lab.service_data``.
    """
    lab: Lab
    params: BaseModel | None = None
    timeout: float | None = None

    @property
    def lab_id(self) -> str:
        return self.lab.id


class NoParams(BaseModel):
    """Params model for services that take no configuration."""


class Service(ABC):
    """Abstract base class for lab services."""

    # Schema for the service config's key/value parameters
    params_model: type[BaseModel] = NoParams

    @property
    @abstractmethod
    def name(self) -> str:
        """Service type name used for dispatch (e.g. 'proxmox_user')."""
        ...

    @property
    def description(self) -> str:
        return ""

    @property
    def required_params(self) -> list[str]:
        """Config keys an operator must supply for this service."""
        return [
            key for key, field in self.params_model.model_fields.items()
            if field.is_required()
        ]

    @property
    def setup_steps(self) -> list[str]:
        """Ordered step names reported during setup."""
        return ["Initializing"]

    def parse_params(self, raw: dict[str, str] | None) -> BaseModel:
        """Validate raw config parameters into this service's params model.

        Raises:
            ConfigurationError: If required keys are missing or invalid
        """
        try:
            return self.params_model.model_validate(raw or {})
        except ValidationError as e:
            missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise ConfigurationError(
                f"Invalid configuration for {self.name}: {', '.join(missing)}"
            ) from e

    def expected_identifiers(self, lab_id: str) -> dict[str, str]:
        """Service data this service would have written for ``lab_id``.

        Used to clean up labs that have no stored record.
        """
        return {}

    @abstractmethod
    async def execute_setup(self, ctx: SetupContext) -> None:
        """Create the external resources for a lab.

        Raises:
            LabbyError: On any failure; the pipeline marks the lab failed
        """
        ...

    @abstractmethod
    async def execute_cleanup(self, ctx: CleanupContext) -> None:
        """Delete the external resources recorded for a lab.

        Missing remote objects are not an error.
        """
        ...
