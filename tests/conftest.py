"""Pytest configuration and fixtures."""

import sys
from collections.abc import Generator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock and builders imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import MockAzureContext  # noqa: E402

from infraflow.state import InMemoryFlowStateStore  # noqa: E402


@pytest.fixture
def azure() -> Generator[MockAzureContext, None, None]:
    """Mocked Azure SDK with an empty resource group."""
    with MockAzureContext() as ctx:
        yield ctx


@pytest.fixture
def store() -> InMemoryFlowStateStore:
    """Flow state store that keeps documents in memory."""
    return InMemoryFlowStateStore()
