# widelog/tests/conftest.py
import random

import pytest
from prometheus_client import CollectorRegistry

from widelog.metrics import WidelogMetrics


class FakeClock:
    """Monotonic clock under test control (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Collect:
    """Drain that keeps every event it receives."""

    name = "collect"

    def __init__(self):
        self.events = []
        self.contexts = []

    def drain(self, ctx):
        self.contexts.append(ctx)
        self.events.append(ctx.event)


class Boom:
    name = "boom"

    def drain(self, ctx):
        raise RuntimeError("sink down")


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return WidelogMetrics(registry=registry)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def collect():
    return Collect()


@pytest.fixture
def boom():
    return Boom()


@pytest.fixture
def rng():
    return random.Random(1234)
