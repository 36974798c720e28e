"""Tests for the shared tag allocator."""
from __future__ import annotations

import pytest

from labby.errors import TagExhaustedError
from labby.services.allocator import TagAllocator


class TestTagAllocator:
    """Tests for TagAllocator."""

    def test_allocates_lowest_free_tag(self):
        allocator = TagAllocator()

        assert allocator.allocate(100, 102, "lab1") == 100
        assert allocator.allocate(100, 102, "lab2") == 101
        assert allocator.in_use() == {100: "lab1", 101: "lab2"}

    def test_exhausted_range(self):
        allocator = TagAllocator()
        allocator.allocate(5, 6, "lab1")
        allocator.allocate(5, 6, "lab2")

        with pytest.raises(TagExhaustedError):
            allocator.allocate(5, 6, "lab3")

    def test_invalid_range(self):
        with pytest.raises(ValueError):
            TagAllocator().allocate(10, 9, "lab1")

    def test_release_makes_tag_reusable(self):
        allocator = TagAllocator()
        tag = allocator.allocate(1, 1, "lab1")
        allocator.release(tag)

        assert allocator.allocate(1, 1, "lab2") == 1

    def test_release_unknown_tag_is_noop(self):
        allocator = TagAllocator()
        allocator.release(42)

        assert allocator.in_use() == {}

    def test_release_owner(self):
        allocator = TagAllocator()
        allocator.allocate(1, 10, "lab1")
        allocator.allocate(1, 10, "lab2")
        allocator.allocate(20, 30, "lab1")

        assert allocator.release_owner("lab1") == [1, 20]
        assert allocator.in_use() == {2: "lab2"}

    def test_seed_reserves_tags(self):
        calls = []

        def seed():
            calls.append(True)
            return [(3100, "old-lab"), (3101, "old-lab")]

        allocator = TagAllocator(seed=seed)

        assert allocator.allocate(3100, 3149, "new-lab") == 3102
        allocator.allocate(3100, 3149, "new-lab")
        assert len(calls) == 1
