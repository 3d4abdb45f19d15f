from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime

import pytest

from controlnet.config import Settings
from controlnet.core.clock import ManualClock, ManualWallClock
from controlnet.core.events import EventBus
from controlnet.core.network import ControlNetwork
from controlnet.core.node_registry import NetworkMetrics


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(start=1000.0)


@pytest.fixture()
def wall_clock() -> ManualWallClock:
    return ManualWallClock(datetime(2026, 3, 2, 12, 0, tzinfo=UTC))


@pytest.fixture()
def settings() -> Settings:
    return Settings(_env_file=None, seed_defaults=False)


@pytest.fixture()
def seeded_settings() -> Settings:
    return Settings(_env_file=None, seed_defaults=True)


@pytest.fixture()
def bus(clock: ManualClock) -> EventBus:
    return EventBus(clock=clock)


@pytest.fixture()
def metrics() -> NetworkMetrics:
    return NetworkMetrics()


@pytest.fixture()
def network(
    settings: Settings, clock: ManualClock, wall_clock: ManualWallClock
) -> Generator[ControlNetwork]:
    net = ControlNetwork(settings, clock=clock, wall_clock=wall_clock)
    net.initialize()
    yield net
    net.shutdown()


@pytest.fixture()
def seeded_network(
    seeded_settings: Settings, clock: ManualClock, wall_clock: ManualWallClock
) -> Generator[ControlNetwork]:
    net = ControlNetwork(seeded_settings, clock=clock, wall_clock=wall_clock)
    net.initialize()
    yield net
    net.shutdown()
