"""Tests for the public package surface."""

from __future__ import annotations

import marvin_drone


class TestPublicApi:
    def test_all_names_importable(self) -> None:
        for name in marvin_drone.__all__:
            assert hasattr(marvin_drone, name), name

    def test_version(self) -> None:
        assert marvin_drone.__version__ == "0.1.0"
