"""Remote site registry, communication health and emergency broadcast."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from controlnet.core.errors import (
    AlreadyRegisteredError,
    ExecutionError,
    NotFoundError,
    config_error_from,
)
from controlnet.core.events import Clock, EventBus
from controlnet.core.protocols import ProtocolRegistry
from controlnet.models.enums import EventName, SiteHealth, SiteStatus
from controlnet.models.schemas import SiteConfig

logger = logging.getLogger(__name__)

EMERGENCY_COMMAND = "EMERGENCY_STOP"


@dataclass(slots=True)
class RemoteSite:
    config: SiteConfig
    status: SiteStatus = SiteStatus.offline
    health: SiteHealth = SiteHealth.unknown
    last_communication: float | None = None
    connected_at: datetime | None = None
    commands_sent: int = 0
    errors: int = 0
    unit_id: int = 1

    @property
    def id(self) -> str:
        return self.config.site_id

    @property
    def protocol(self) -> str:
        return self.config.protocol

    def as_dict(self) -> dict[str, Any]:
        return {
            "site_id": self.id,
            "site_name": self.config.site_name,
            "location": self.config.location,
            "protocol": self.protocol,
            "address": f"{self.config.address}:{self.config.port}",
            "status": str(self.status),
            "health": str(self.health),
            "last_communication": self.last_communication,
            "commands_sent": self.commands_sent,
            "errors": self.errors,
        }


class RemoteSiteManager:
    """Track remote sites and frame commands for them.

    Health is derived from the age of the last communication and is only
    observed: a timed-out site keeps its registration and can recover on the
    next successful communication.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        protocols: ProtocolRegistry,
        clock: Clock | None = None,
        degraded_after_s: float = 60.0,
        timeout_after_s: float = 300.0,
        wall_clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._bus = bus
        self._protocols = protocols
        self._clock = clock or time.monotonic
        self._wall_clock = wall_clock or (lambda: datetime.now(UTC))
        self.degraded_after_s = degraded_after_s
        self.timeout_after_s = timeout_after_s
        self._sites: dict[str, RemoteSite] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def register_site(
        self, config: SiteConfig | Mapping[str, Any], *, now: float | None = None
    ) -> RemoteSite:
        try:
            cfg = config if isinstance(config, SiteConfig) else SiteConfig.model_validate(config)
        except ValidationError as exc:
            raise config_error_from(exc, context="site") from exc
        if cfg.site_id in self._sites:
            raise AlreadyRegisteredError("Site", cfg.site_id)
        self._protocols.get(cfg.protocol)

        site = RemoteSite(config=cfg, status=SiteStatus.connecting)
        self._sites[cfg.site_id] = site
        logger.info(
            "Remote site registered",
            extra={"site": cfg.site_id, "protocol": cfg.protocol},
        )
        self._bus.publish(EventName.site_registered, site.as_dict(), source="sites")
        self.connect_site(cfg.site_id, now=now)
        return site

    def connect_site(self, site_id: str, *, now: float | None = None) -> RemoteSite:
        site = self.require(site_id)
        site.status = SiteStatus.online
        site.health = SiteHealth.healthy
        site.last_communication = self._clock() if now is None else now
        site.connected_at = self._wall_clock()
        self._bus.publish(EventName.site_connected, {"site_id": site_id}, source="sites")
        return site

    def disconnect_site(self, site_id: str, *, reason: str = "operator") -> RemoteSite:
        site = self.require(site_id)
        site.status = SiteStatus.offline
        site.health = SiteHealth.unknown
        logger.info("Remote site disconnected", extra={"site": site_id, "reason": reason})
        self._bus.publish(
            EventName.site_disconnected, {"site_id": site_id, "reason": reason}, source="sites"
        )
        return site

    def remove_site(self, site_id: str) -> bool:
        return self._sites.pop(site_id, None) is not None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get(self, site_id: str) -> RemoteSite | None:
        return self._sites.get(site_id)

    def require(self, site_id: str) -> RemoteSite:
        site = self._sites.get(site_id)
        if site is None:
            raise NotFoundError("Site", site_id)
        return site

    def sites(self) -> list[RemoteSite]:
        return list(self._sites.values())

    def timed_out_sites(self) -> list[str]:
        return [s.id for s in self._sites.values() if s.status == SiteStatus.timeout]

    def __len__(self) -> int:
        return len(self._sites)

    # ------------------------------------------------------------------
    # Communication
    # ------------------------------------------------------------------
    def record_communication(self, site_id: str, *, now: float | None = None) -> RemoteSite:
        site = self.require(site_id)
        site.last_communication = self._clock() if now is None else now
        if site.status in (SiteStatus.timeout, SiteStatus.online):
            site.status = SiteStatus.online
            site.health = SiteHealth.healthy
        return site

    def send_command(
        self,
        site_id: str,
        command: str,
        payload: Mapping[str, Any] | None = None,
        *,
        now: float | None = None,
    ) -> bytes:
        """Frame ``command`` with the site's codec; the site must be online."""

        site = self.require(site_id)
        if site.status != SiteStatus.online:
            raise ExecutionError(f"Site {site_id} is {site.status}; cannot send {command}")
        message = {"command": command, "site_id": site_id, "data": dict(payload or {})}
        try:
            frame = self._protocols.encode(site.protocol, message, unit_id=site.unit_id)
        except Exception:
            site.errors += 1
            raise
        site.commands_sent += 1
        site.last_communication = self._clock() if now is None else now
        self._bus.publish(
            EventName.site_command_sent,
            {
                "site_id": site_id,
                "command": command,
                "protocol": site.protocol,
                "sequence": self._protocols.sequence(site.protocol),
                "bytes": len(frame),
            },
            source="sites",
        )
        return frame

    def broadcast_emergency(self, reason: str) -> list[str]:
        """Send an emergency stop frame to every online site; returns the ids reached."""

        reached: list[str] = []
        for site in list(self._sites.values()):
            if site.status != SiteStatus.online:
                continue
            try:
                self.send_command(site.id, EMERGENCY_COMMAND, {"reason": reason})
            except Exception:
                logger.exception("Emergency broadcast failed", extra={"site": site.id})
                continue
            reached.append(site.id)
        logger.critical(
            "Emergency broadcast sent", extra={"sites": reached, "reason": reason}
        )
        self._bus.publish(
            EventName.emergency_broadcast, {"reason": reason, "sites": reached}, source="sites"
        )
        return reached

    def check_site_health(self, *, now: float | None = None) -> dict[str, SiteHealth]:
        """Re-derive health from communication age; returns sites whose health changed."""

        current = self._clock() if now is None else now
        changed: dict[str, SiteHealth] = {}
        for site in self._sites.values():
            if site.status in (SiteStatus.offline, SiteStatus.error):
                continue
            if site.last_communication is None:
                continue
            age = current - site.last_communication
            previous = site.health
            if age >= self.timeout_after_s:
                if site.status != SiteStatus.timeout:
                    site.status = SiteStatus.timeout
                    site.health = SiteHealth.failed
                    logger.error("Remote site timed out", extra={"site": site.id, "age_s": age})
                    self._bus.publish(
                        EventName.site_timeout, {"site_id": site.id, "age_s": age}, source="sites"
                    )
            elif age >= self.degraded_after_s:
                if site.health != SiteHealth.degraded:
                    site.health = SiteHealth.degraded
                    logger.warning("Remote site degraded", extra={"site": site.id, "age_s": age})
                    self._bus.publish(
                        EventName.site_health_degraded,
                        {"site_id": site.id, "age_s": age},
                        source="sites",
                    )
            else:
                site.health = SiteHealth.healthy
            if site.health != previous:
                changed[site.id] = site.health
        return changed

    def get_status(self) -> dict[str, Any]:
        return {
            "total_sites": len(self._sites),
            "online_sites": sum(1 for s in self._sites.values() if s.status == SiteStatus.online),
            "timed_out_sites": self.timed_out_sites(),
            "sites": [site.as_dict() for site in self._sites.values()],
        }

    def shutdown(self) -> None:
        self._sites.clear()
        logger.info("Remote site manager shut down")


__all__ = ["EMERGENCY_COMMAND", "RemoteSite", "RemoteSiteManager"]
