"""Pytest configuration for all tests."""

import pytest
from prometheus_client import CollectorRegistry

from src.repoclaw.events.metrics import PipelineMetrics
from src.repoclaw.state.kv import InMemoryKeyValueStore


@pytest.fixture
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def metrics() -> PipelineMetrics:
    """Metrics bound to a private registry so tests never share counters."""
    return PipelineMetrics(registry=CollectorRegistry())
