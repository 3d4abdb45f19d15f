"""Tests for remote site registration, health ageing and emergency broadcast."""

from __future__ import annotations

import pytest

from controlnet.core.clock import ManualClock
from controlnet.core.errors import (
    AlreadyRegisteredError,
    ConfigurationError,
    ExecutionError,
    UnknownTypeError,
)
from controlnet.core.events import EventBus
from controlnet.core.protocols import ProtocolRegistry
from controlnet.core.sites import RemoteSiteManager
from controlnet.models.enums import EventName, SiteHealth, SiteStatus

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_sites(bus: EventBus, clock: ManualClock) -> tuple[RemoteSiteManager, ProtocolRegistry]:
    protocols = ProtocolRegistry.with_defaults()
    sites = RemoteSiteManager(
        bus=bus, protocols=protocols, clock=clock, degraded_after_s=60.0, timeout_after_s=300.0
    )
    return sites, protocols


def _site(site_id: str, protocol: str = "MODBUS_TCP") -> dict[str, object]:
    return {
        "site_id": site_id,
        "site_name": f"Site {site_id}",
        "address": "10.0.0.5",
        "protocol": protocol,
    }


# ===================================================================
# Registration
# ===================================================================


class TestRegisterSite:
    def test_site_comes_online(self, bus: EventBus, clock: ManualClock) -> None:
        sites, _ = _make_sites(bus, clock)

        site = sites.register_site(_site("S1"))

        assert site.status == SiteStatus.online
        assert site.health == SiteHealth.healthy
        assert site.last_communication == clock.now
        assert len(bus.recent(name=EventName.site_registered)) == 1
        assert len(bus.recent(name=EventName.site_connected)) == 1

    def test_unknown_protocol(self, bus: EventBus, clock: ManualClock) -> None:
        sites, _ = _make_sites(bus, clock)
        with pytest.raises(UnknownTypeError):
            sites.register_site(_site("S1", protocol="BACNET"))
        assert len(sites) == 0

    def test_missing_address_is_rejected(self, bus: EventBus, clock: ManualClock) -> None:
        sites, _ = _make_sites(bus, clock)
        with pytest.raises(ConfigurationError):
            sites.register_site({"site_id": "S1", "site_name": "No address"})

    def test_duplicate_site(self, bus: EventBus, clock: ManualClock) -> None:
        sites, _ = _make_sites(bus, clock)
        sites.register_site(_site("S1"))
        with pytest.raises(AlreadyRegisteredError):
            sites.register_site(_site("S1"))


# ===================================================================
# Health
# ===================================================================


class TestSiteHealth:
    def test_health_ages_to_degraded_then_timeout(
        self, bus: EventBus, clock: ManualClock
    ) -> None:
        sites, _ = _make_sites(bus, clock)
        sites.register_site(_site("S1"))

        clock.advance(30)
        assert sites.check_site_health() == {}

        clock.advance(30)
        assert sites.check_site_health() == {"S1": SiteHealth.degraded}
        assert len(bus.recent(name=EventName.site_health_degraded)) == 1

        clock.advance(240)
        assert sites.check_site_health() == {"S1": SiteHealth.failed}
        assert sites.timed_out_sites() == ["S1"]
        assert len(bus.recent(name=EventName.site_timeout)) == 1

        # Timed-out sites keep their registration.
        assert sites.get("S1") is not None

    def test_recovers_on_communication(self, bus: EventBus, clock: ManualClock) -> None:
        sites, _ = _make_sites(bus, clock)
        sites.register_site(_site("S1"))
        clock.advance(400)
        sites.check_site_health()

        site = sites.record_communication("S1")

        assert site.status == SiteStatus.online
        assert site.health == SiteHealth.healthy
        assert sites.timed_out_sites() == []

    def test_offline_sites_are_not_aged(self, bus: EventBus, clock: ManualClock) -> None:
        sites, _ = _make_sites(bus, clock)
        sites.register_site(_site("S1"))
        sites.disconnect_site("S1")
        clock.advance(400)
        assert sites.check_site_health() == {}


# ===================================================================
# Commands and broadcast
# ===================================================================


class TestCommands:
    def test_send_command_frames_with_site_protocol(
        self, bus: EventBus, clock: ManualClock
    ) -> None:
        sites, protocols = _make_sites(bus, clock)
        sites.register_site(_site("S1"))

        frame = sites.send_command("S1", "SET_POINT", {"value": 0.4})

        decoded = protocols.decode("MODBUS_TCP", frame)
        assert decoded.body["command"] == "SET_POINT"
        assert decoded.body["data"] == {"value": 0.4}
        site = sites.require("S1")
        assert site.commands_sent == 1

    def test_send_to_offline_site_fails(self, bus: EventBus, clock: ManualClock) -> None:
        sites, _ = _make_sites(bus, clock)
        sites.register_site(_site("S1"))
        sites.disconnect_site("S1")
        with pytest.raises(ExecutionError):
            sites.send_command("S1", "PING")

    def test_broadcast_reaches_only_online_sites(
        self, bus: EventBus, clock: ManualClock
    ) -> None:
        sites, _ = _make_sites(bus, clock)
        sites.register_site(_site("S1"))
        sites.register_site(_site("S2", protocol="OPC_UA"))
        sites.register_site(_site("S3"))
        sites.disconnect_site("S3")

        reached = sites.broadcast_emergency("plant trip")

        assert reached == ["S1", "S2"]
        event = bus.recent(name=EventName.emergency_broadcast)[0]
        assert event.payload["sites"] == ["S1", "S2"]
