"""Tests for the exclude pattern set."""

from __future__ import annotations

import threading

import pytest

from dirmirror.excludes import DEFAULT_EXCLUDE_PATTERNS, ExcludeSet


class TestExcludeSet:
    def test_defaults_seeded(self):
        excludes = ExcludeSet.with_defaults()
        assert excludes.list() == DEFAULT_EXCLUDE_PATTERNS

    def test_defaults_plus_extra_deduplicated(self):
        excludes = ExcludeSet.with_defaults(["**/*.iso", "**/.git/**"])
        patterns = excludes.list()
        assert patterns[-1] == "**/*.iso"
        assert patterns.count("**/.git/**") == 1

    def test_add_is_idempotent(self):
        excludes = ExcludeSet()
        assert excludes.add("**/*.iso") is True
        assert excludes.add("**/*.iso") is False
        assert excludes.list() == ["**/*.iso"]

    def test_add_strips_whitespace(self):
        excludes = ExcludeSet()
        excludes.add("  **/*.bak ")
        assert "**/*.bak" in excludes

    def test_add_rejects_blank(self):
        with pytest.raises(ValueError):
            ExcludeSet().add("   ")

    def test_remove(self):
        excludes = ExcludeSet(["a", "b"])
        assert excludes.remove("a") is True
        assert excludes.remove("a") is False
        assert excludes.list() == ["b"]

    def test_list_returns_copy(self):
        excludes = ExcludeSet(["a"])
        snapshot = excludes.list()
        snapshot.append("b")
        assert len(excludes) == 1

    def test_concurrent_adds_keep_one_copy(self):
        excludes = ExcludeSet()
        threads = [
            threading.Thread(target=excludes.add, args=("**/*.iso",)) for _ in range(20)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert excludes.list() == ["**/*.iso"]
