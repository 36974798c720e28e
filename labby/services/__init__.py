"""Service implementations provisioned into labs."""

from labby.services.allocator import TagAllocator
from labby.services.base import (
    CleanupContext,
    NoParams,
    Service,
    ServiceType,
    SetupContext,
    StepStatus,
)
from labby.services.registry import ServiceDispatcher, ServiceRegistry, build_registry

__all__ = [
    # Base classes and types
    "Service",
    "ServiceType",
    "StepStatus",
    "NoParams",
    "SetupContext",
    "CleanupContext",
    # Collaborators
    "TagAllocator",
    # Registry
    "ServiceRegistry",
    "ServiceDispatcher",
    "build_registry",
]
