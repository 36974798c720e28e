"""In-memory progress tracking for labs being provisioned.

Each lab has a tree of services and their steps plus a bounded log, read
by pollers while the provisioning pipeline updates it. A tracker-wide lock
guards the lab table only; every lab has its own lock, so updates to one
lab never wait on another. Readers always receive a deep copy.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel, Field

from labby.config import settings
from labby.services.base import StepStatus
from labby.utils import utcnow

logger = logging.getLogger(__name__)

COMPLETED_MESSAGE = "Lab setup completed successfully"


class ProgressStep(BaseModel):
    name: str
    status: StepStatus = StepStatus.PENDING
    message: str = ""
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ServiceProgress(BaseModel):
    name: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    error: str | None = None
    steps: list[ProgressStep] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class LabProgress(BaseModel):
    lab_id: str
    overall_progress: int = 0
    current_step: str = "Initializing"
    status: StepStatus = StepStatus.RUNNING
    services: list[ServiceProgress] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


@dataclass
class _Entry:
    progress: LabProgress
    lock: threading.Lock = field(default_factory=threading.Lock)


def _completed_steps(service: ServiceProgress) -> int:
    return sum(1 for step in service.steps if step.status == StepStatus.COMPLETED)


class ProgressTracker:
    """Per-lab progress trees keyed by lab ID."""

    def __init__(self, max_log_entries: int | None = None):
        self.max_log_entries = max_log_entries or settings.progress_max_log_entries
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _entry(self, lab_id: str) -> _Entry | None:
        with self._lock:
            return self._entries.get(lab_id)

    def _append_log(self, progress: LabProgress, message: str) -> None:
        progress.logs.append(f"[{utcnow().strftime('%H:%M:%S')}] {message}")
        if len(progress.logs) > self.max_log_entries:
            del progress.logs[: len(progress.logs) - self.max_log_entries]

    def init_progress(self, lab_id: str) -> LabProgress:
        """Create (or reset) the progress entry for a lab."""
        entry = _Entry(LabProgress(lab_id=lab_id))
        with entry.lock:
            self._append_log(entry.progress, "Lab provisioning started")
        with self._lock:
            self._entries[lab_id] = entry
        return entry.progress.model_copy(deep=True)

    def add_service(self, lab_id: str, name: str, description: str, steps: list[str]) -> None:
        """Register a service and its expected steps before it runs."""
        entry = self._entry(lab_id)
        if entry is None:
            logger.debug(f"No progress entry for lab {lab_id}, ignoring service {name}")
            return
        with entry.lock:
            entry.progress.services.append(ServiceProgress(
                name=name,
                description=description,
                steps=[ProgressStep(name=step) for step in steps],
            ))
            entry.progress.updated_at = utcnow()

    def update_service_step(
        self,
        lab_id: str,
        service_name: str,
        step_name: str,
        status: StepStatus,
        message: str = "",
    ) -> None:
        """Record a step transition and recompute service and overall progress."""
        entry = self._entry(lab_id)
        if entry is None:
            return
        status = StepStatus(status)
        now = utcnow()
        with entry.lock:
            progress = entry.progress
            service = next((s for s in progress.services if s.name == service_name), None)
            if service is None:
                logger.warning(f"Progress update for unknown service {service_name} on lab {lab_id}")
                return
            step = next((s for s in service.steps if s.name == step_name), None)
            if step is None:
                logger.warning(f"Progress update for unknown step {step_name!r} of {service_name}")
                return

            step.status = status
            if message:
                step.message = message
            if status == StepStatus.RUNNING and step.started_at is None:
                step.started_at = now
            if status in (StepStatus.COMPLETED, StepStatus.FAILED):
                step.completed_at = now

            if status == StepStatus.FAILED:
                service.status = StepStatus.FAILED
                service.error = message or f"{step_name} failed"
                service.completed_at = now
            elif service.status == StepStatus.PENDING:
                service.status = StepStatus.RUNNING
                service.started_at = service.started_at or now

            completed = _completed_steps(service)
            if service.steps:
                service.progress = completed * 100 // len(service.steps)
            if service.status == StepStatus.RUNNING and completed == len(service.steps):
                service.status = StepStatus.COMPLETED
                service.completed_at = now

            progress.current_step = step_name
            if message:
                self._append_log(progress, f"{service_name}: {message}")

            if progress.status == StepStatus.RUNNING:
                total = sum(len(s.steps) for s in progress.services)
                done = sum(_completed_steps(s) for s in progress.services)
                if total:
                    # Never move backwards while the lab is still provisioning
                    progress.overall_progress = max(progress.overall_progress, done * 100 // total)
            progress.updated_at = now

    def add_log(self, lab_id: str, message: str) -> None:
        entry = self._entry(lab_id)
        if entry is None:
            return
        with entry.lock:
            self._append_log(entry.progress, message)
            entry.progress.updated_at = utcnow()

    def complete_progress(self, lab_id: str) -> None:
        """Mark every unfinished service and step completed; overall becomes 100."""
        entry = self._entry(lab_id)
        if entry is None:
            return
        now = utcnow()
        with entry.lock:
            progress = entry.progress
            for service in progress.services:
                if service.status in (StepStatus.PENDING, StepStatus.RUNNING):
                    service.status = StepStatus.COMPLETED
                    service.progress = 100
                    service.completed_at = now
                for step in service.steps:
                    if step.status in (StepStatus.PENDING, StepStatus.RUNNING):
                        step.status = StepStatus.COMPLETED
                        step.message = COMPLETED_MESSAGE
                        step.completed_at = now
            progress.overall_progress = 100
            progress.current_step = COMPLETED_MESSAGE
            progress.status = StepStatus.COMPLETED
            progress.updated_at = now

    def fail_progress(self, lab_id: str, error: str) -> None:
        """Mark every unfinished service and step failed; overall is frozen."""
        entry = self._entry(lab_id)
        if entry is None:
            return
        message = f"Lab setup failed: {error}"
        now = utcnow()
        with entry.lock:
            progress = entry.progress
            for service in progress.services:
                if service.status in (StepStatus.PENDING, StepStatus.RUNNING):
                    service.status = StepStatus.FAILED
                    service.error = service.error or error
                    service.completed_at = now
                for step in service.steps:
                    if step.status in (StepStatus.PENDING, StepStatus.RUNNING):
                        step.status = StepStatus.FAILED
                        step.message = message
                        step.completed_at = now
            progress.current_step = message
            progress.status = StepStatus.FAILED
            self._append_log(progress, message)
            progress.updated_at = now

    def get_progress(self, lab_id: str) -> LabProgress | None:
        """Consistent snapshot of a lab's progress, or None."""
        entry = self._entry(lab_id)
        if entry is None:
            return None
        with entry.lock:
            return entry.progress.model_copy(deep=True)

    def cleanup_progress(self, lab_id: str) -> None:
        """Discard a lab's progress entry."""
        with self._lock:
            self._entries.pop(lab_id, None)

    def tracked_labs(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())
