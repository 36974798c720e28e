"""Persistence collaborator for labs, credentials and service catalog rows.

The engine talks to storage only through ``LabRepository``. The SQL
implementation maps ORM rows to the pydantic domain models so callers never
hold live session-bound objects across awaits.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from labby import models
from labby.errors import LabNotFoundError
from labby.schemas import Credential, Lab, LabStatus, ServiceConfig, ServiceLimit
from labby.utils import utcnow

logger = logging.getLogger(__name__)


class LabRepository(ABC):
    """Storage operations the orchestration engine depends on."""

    @abstractmethod
    def create_lab(self, lab: Lab) -> Lab:
        ...

    @abstractmethod
    def get_lab_by_id(self, lab_id: str) -> Lab | None:
        ...

    @abstractmethod
    def get_labs_by_owner_id(self, owner_id: str) -> list[Lab]:
        ...

    @abstractmethod
    def get_all_labs(self) -> list[Lab]:
        ...

    @abstractmethod
    def get_labs_by_status(self, *statuses: LabStatus) -> list[Lab]:
        ...

    @abstractmethod
    def update_lab(self, lab: Lab) -> Lab:
        """Persist status, timestamps, service data and used services.

        Raises:
            LabNotFoundError: If the lab was deleted in the meantime
        """

    @abstractmethod
    def delete_lab(self, lab_id: str) -> None:
        """Delete a lab and its credentials. Missing labs are ignored."""

    @abstractmethod
    def create_credential(self, credential: Credential) -> Credential:
        ...

    @abstractmethod
    def get_expired_labs(self, now: datetime | None = None) -> list[Lab]:
        """Labs whose ends_at has passed and that are not yet expired."""

    @abstractmethod
    def save_service_config(self, config: ServiceConfig) -> ServiceConfig:
        ...

    @abstractmethod
    def get_service_config(self, config_id: str) -> ServiceConfig | None:
        ...

    @abstractmethod
    def list_service_configs(self) -> list[ServiceConfig]:
        ...

    @abstractmethod
    def save_service_limit(self, limit: ServiceLimit) -> ServiceLimit:
        ...

    @abstractmethod
    def list_service_limits(self) -> list[ServiceLimit]:
        ...


class SqlLabRepository(LabRepository):
    """SQLAlchemy-backed repository.

    Args:
        session_factory: Callable returning a new Session (a sessionmaker)
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def create_lab(self, lab: Lab) -> Lab:
        now = utcnow()
        with self._session_factory() as session:
            row = models.Lab(
                id=lab.id,
                name=lab.name,
                status=lab.status.value,
                owner_id=lab.owner_id,
                started_at=lab.started_at,
                ends_at=lab.ends_at,
                template_id=lab.template_id,
                service_data=dict(lab.service_data),
                used_services=list(lab.used_services),
                created_at=lab.created_at or now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return Lab.model_validate(row)

    def get_lab_by_id(self, lab_id: str) -> Lab | None:
        with self._session_factory() as session:
            row = session.get(models.Lab, lab_id)
            return Lab.model_validate(row) if row else None

    def get_labs_by_owner_id(self, owner_id: str) -> list[Lab]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(models.Lab)
                .where(models.Lab.owner_id == owner_id)
                .order_by(models.Lab.created_at.desc())
            ).all()
            return [Lab.model_validate(row) for row in rows]

    def get_all_labs(self) -> list[Lab]:
        with self._session_factory() as session:
            rows = session.scalars(select(models.Lab).order_by(models.Lab.created_at.desc())).all()
            return [Lab.model_validate(row) for row in rows]

    def get_labs_by_status(self, *statuses: LabStatus) -> list[Lab]:
        values = [status.value for status in statuses]
        with self._session_factory() as session:
            rows = session.scalars(select(models.Lab).where(models.Lab.status.in_(values))).all()
            return [Lab.model_validate(row) for row in rows]

    def update_lab(self, lab: Lab) -> Lab:
        with self._session_factory() as session:
            row = session.get(models.Lab, lab.id)
            if row is None:
                raise LabNotFoundError(f"Lab {lab.id} not found", lab.id)
            row.name = lab.name
            row.status = lab.status.value
            row.started_at = lab.started_at
            row.ends_at = lab.ends_at
            row.template_id = lab.template_id
            # Fresh containers so the JSON columns are flagged dirty
            row.service_data = dict(lab.service_data)
            row.used_services = list(lab.used_services)
            row.updated_at = utcnow()
            session.commit()
            session.refresh(row)
            updated = Lab.model_validate(row)
            lab.updated_at = updated.updated_at
            return updated

    def delete_lab(self, lab_id: str) -> None:
        with self._session_factory() as session:
            row = session.get(models.Lab, lab_id)
            if row is None:
                logger.debug(f"Lab {lab_id} already deleted")
                return
            session.delete(row)
            session.commit()

    def create_credential(self, credential: Credential) -> Credential:
        now = utcnow()
        with self._session_factory() as session:
            row = models.Credential(
                lab_id=credential.lab_id,
                label=credential.label,
                username=credential.username,
                password=credential.password,
                url=credential.url,
                notes=credential.notes,
                expires_at=credential.expires_at,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return Credential.model_validate(row)

    def get_expired_labs(self, now: datetime | None = None) -> list[Lab]:
        now = now or utcnow()
        with self._session_factory() as session:
            rows = session.scalars(
                select(models.Lab).where(
                    models.Lab.ends_at < now,
                    models.Lab.status != LabStatus.EXPIRED.value,
                )
            ).all()
            return [Lab.model_validate(row) for row in rows]

    def save_service_config(self, config: ServiceConfig) -> ServiceConfig:
        with self._session_factory() as session:
            row = session.get(models.ServiceConfig, config.id) or models.ServiceConfig(id=config.id)
            row.name = config.name
            row.type = config.type
            row.description = config.description
            row.logo = config.logo
            row.params = dict(config.params)
            row.is_active = config.is_active
            session.add(row)
            session.commit()
            session.refresh(row)
            return ServiceConfig.model_validate(row)

    def get_service_config(self, config_id: str) -> ServiceConfig | None:
        with self._session_factory() as session:
            row = session.get(models.ServiceConfig, config_id)
            return ServiceConfig.model_validate(row) if row else None

    def list_service_configs(self) -> list[ServiceConfig]:
        with self._session_factory() as session:
            rows = session.scalars(select(models.ServiceConfig).order_by(models.ServiceConfig.id)).all()
            return [ServiceConfig.model_validate(row) for row in rows]

    def save_service_limit(self, limit: ServiceLimit) -> ServiceLimit:
        with self._session_factory() as session:
            row = session.get(models.ServiceLimit, limit.id) or models.ServiceLimit(id=limit.id)
            row.service_id = limit.service_id
            row.max_labs = limit.max_labs
            row.max_duration = limit.max_duration
            row.is_active = limit.is_active
            session.add(row)
            session.commit()
            session.refresh(row)
            return ServiceLimit.model_validate(row)

    def list_service_limits(self) -> list[ServiceLimit]:
        with self._session_factory() as session:
            rows = session.scalars(select(models.ServiceLimit).order_by(models.ServiceLimit.id)).all()
            return [ServiceLimit.model_validate(row) for row in rows]
