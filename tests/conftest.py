"""
Shared pytest fixtures and configuration for buildpod tests.

This module provides:
- Build metadata and unit spec fixtures for both execution profiles
- A termination signal per test
- An in-memory console stream for log multiplexer output

Usage:
    Fixtures are auto-discovered by pytest. Use them as function
    arguments (pytest injects them automatically).

    def test_something(spec, termination, tmp_path):
        ...
"""

import io
import sys
from pathlib import Path

import pytest

# Ensure buildpod package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from buildpod.runtimes import (
    LEGACY_PROFILE,
    MODERN_PROFILE,
    BuildMetadata,
    TerminationSignal,
    UnitSpec,
    UnitSpecBuilder,
)


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark all tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Build / Spec Fixtures
# =============================================================================


@pytest.fixture
def build() -> BuildMetadata:
    """Build ``b1`` number ``5``."""
    return BuildMetadata(
        build_config="b1",
        build_number="5",
        image="quay.io/example/worker:latest",
        labels={"app": "buildpod"},
        service_account="builder",
    )


@pytest.fixture
def spec(build: BuildMetadata) -> UnitSpec:
    """Worker 0 of ``build`` under the modern profile."""
    return UnitSpecBuilder(MODERN_PROFILE).build(build, 0, [("FOO", "bar")])


@pytest.fixture
def legacy_spec(build: BuildMetadata) -> UnitSpec:
    """Worker 0 of ``build`` under the legacy profile."""
    return UnitSpecBuilder(LEGACY_PROFILE).build(build, 0)


@pytest.fixture
def termination() -> TerminationSignal:
    return TerminationSignal()


@pytest.fixture
def console() -> io.StringIO:
    """Captures console log output instead of stdout."""
    return io.StringIO()
