"""Integer tag allocation (VLAN IDs and similar) shared across labs.

Tags handed out to one lab must not be handed to another until released.
The allocator is injected into the services that need it; state is loaded
lazily from an optional seed callable the first time it is used, so tags
held by labs that survived a restart are not reissued.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable

from labby.errors import TagExhaustedError

logger = logging.getLogger(__name__)


@dataclass
class TagAllocator:
    """Lock-guarded allocator of integer tags within caller-given ranges."""

    # Returns (tag, owner) pairs already in use
    seed: Callable[[], Iterable[tuple[int, str]]] | None = None

    # tag -> owning lab ID
    _owners: dict[int, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _initialized: bool = False

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        if self.seed is not None:
            for tag, owner in self.seed():
                self._owners[tag] = owner
            logger.info(f"Tag allocator seeded with {len(self._owners)} tag(s) in use")
        self._initialized = True

    def allocate(self, low: int, high: int, owner: str) -> int:
        """Allocate the lowest free tag in [low, high].

        Raises:
            ValueError: If the range is empty
            TagExhaustedError: If every tag in the range is in use
        """
        if low > high:
            raise ValueError(f"Invalid tag range {low}-{high}")
        with self._lock:
            self._ensure_initialized()
            for tag in range(low, high + 1):
                if tag not in self._owners:
                    self._owners[tag] = owner
                    logger.debug(f"Allocated tag {tag} to {owner}")
                    return tag
        raise TagExhaustedError(f"No free tag in range {low}-{high}", owner)

    def release(self, tag: int) -> None:
        with self._lock:
            self._ensure_initialized()
            owner = self._owners.pop(tag, None)
        if owner is not None:
            logger.debug(f"Released tag {tag} from {owner}")

    def release_owner(self, owner: str) -> list[int]:
        """Release every tag held by ``owner``; returns the released tags."""
        with self._lock:
            self._ensure_initialized()
            tags = sorted(tag for tag, tag_owner in self._owners.items() if tag_owner == owner)
            for tag in tags:
                del self._owners[tag]
        return tags

    def in_use(self) -> dict[int, str]:
        with self._lock:
            self._ensure_initialized()
            return dict(self._owners)
