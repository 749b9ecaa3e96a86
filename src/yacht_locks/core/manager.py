"""Lock service: wires persistence, vendor adapters, orchestrator and scheduler."""

import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from yacht_locks.config import (
    LOW_BATTERY_THRESHOLD,
    LockVendor,
    Settings,
    location_label,
)
from yacht_locks.core.access_log import AccessLog, entry_to_dict
from yacht_locks.core.orchestrator import (
    Actor,
    LockOrchestrator,
    Notifier,
    key_setup_pending,
    passcode_to_dict,
)
from yacht_locks.core.rate_limit import CredentialRateLimiter
from yacht_locks.core.registry import CredentialStore, DeviceRegistry
from yacht_locks.core.results import CommandResult, SweepReport
from yacht_locks.db.database import async_session_maker, engine, init_db
from yacht_locks.db.models import Device
from yacht_locks.scheduler.scheduler import StatusScheduler
from yacht_locks.vendors import LockAdapter, build_adapters

logger = logging.getLogger(__name__)


def device_to_dict(device: Device) -> dict[str, Any]:
    """Serialise a device row for the dashboard. Key material is never included."""
    return {
        "id": device.id,
        "site_id": device.site_id,
        "vendor": device.vendor,
        "vendor_device_id": device.vendor_device_id,
        "name": device.name,
        "location": device.location,
        "location_label": location_label(device.location),
        "manufacturer": device.manufacturer,
        "model": device.model,
        "category": device.category,
        "lock_state": device.current_lock_state,
        "state_source": device.state_source,
        "state_confirmed_at": device.state_confirmed_at.isoformat() if device.state_confirmed_at else None,
        "online": device.online_status,
        "battery_level": device.battery_level,
        "low_battery": device.battery_level is not None and device.battery_level < LOW_BATTERY_THRESHOLD,
        "last_status_check": device.last_status_check.isoformat() if device.last_status_check else None,
        "is_active": device.is_active,
        "requires_key_setup": key_setup_pending(device),
        "encryption_key_set_at": (
            device.encryption_key_set_at.isoformat() if device.encryption_key_set_at else None
        ),
    }


class LockService:
    """Owns the long-lived pieces of the smart-lock service."""

    def __init__(
        self,
        settings: Settings,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        bind: Optional[AsyncEngine] = None,
        adapters: Optional[Mapping[LockVendor, LockAdapter]] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = settings
        self._session_maker = session_maker or async_session_maker
        self._bind = bind or engine
        self._adapters = dict(adapters) if adapters is not None else build_adapters(settings)

        self.registry = DeviceRegistry(self._session_maker)
        self.credentials = CredentialStore(self._session_maker)
        self.access_log = AccessLog(self._session_maker)
        self.orchestrator = LockOrchestrator(
            self.registry,
            self.credentials,
            self.access_log,
            self._adapters,
            timeout_seconds=settings.adapter_timeout_seconds,
            refresh_concurrency=settings.refresh_concurrency,
            rate_limiter=CredentialRateLimiter(
                settings.vendor_rate_limit_requests,
                settings.vendor_rate_limit_window_seconds,
            ),
            notifier=notifier,
        )
        self._scheduler: Optional[StatusScheduler] = None
        self._running = False

    async def initialize(self) -> None:
        """Create tables and the scheduler."""
        logger.info("Initializing lock service...")
        await init_db(self._bind)
        self._scheduler = StatusScheduler(
            on_recheck=self.orchestrator.refresh_status,
            on_sweep=self.orchestrator.refresh_all_sites,
            recheck_delay_seconds=self.settings.recheck_delay_seconds,
            poll_interval_seconds=self.settings.status_poll_interval_seconds,
        )
        logger.info("Lock service initialized")

    async def start(self) -> None:
        if self._scheduler:
            self._scheduler.start()
            self.orchestrator.set_recheck_scheduler(self._scheduler.schedule_recheck)
        self._running = True
        logger.info("Lock service started")

    async def stop(self) -> None:
        self._running = False
        self.orchestrator.set_recheck_scheduler(None)
        if self._scheduler:
            self._scheduler.stop()
        for adapter in self._adapters.values():
            await adapter.close()
        logger.info("Lock service stopped")

    def health_check(self) -> dict[str, Any]:
        return {
            "status": "ok" if self._running else "starting",
            "scheduler_running": bool(self._scheduler and self._scheduler.running),
            "vendors": sorted(v.value for v in self._adapters),
            "subscription_alerts": len(self.orchestrator.alerts.active()),
            "timestamp": datetime.utcnow().isoformat(),
        }

    # Devices

    async def list_devices(self, site_id: int, include_inactive: bool = False) -> list[dict[str, Any]]:
        devices = await self.registry.list_for_site(site_id, active_only=not include_inactive)
        return [device_to_dict(d) for d in devices]

    async def get_device(self, device_id: str) -> Optional[dict[str, Any]]:
        device = await self.registry.get(device_id)
        if device is None:
            return None
        view = device_to_dict(device)
        view["last_activity"] = await self.orchestrator.last_activity(device_id)
        return view

    async def register_device(self, site_id: int, **fields: Any) -> dict[str, Any]:
        device = await self.registry.create(site_id, **fields)
        return device_to_dict(device)

    async def update_device(self, device_id: str, **fields: Any) -> Optional[dict[str, Any]]:
        async with self.orchestrator.leases.hold(device_id):
            device = await self.registry.update_details(device_id, **fields)
        return device_to_dict(device) if device else None

    async def deactivate_device(self, device_id: str) -> Optional[dict[str, Any]]:
        async with self.orchestrator.leases.hold(device_id):
            device = await self.registry.set_active(device_id, False)
        return device_to_dict(device) if device else None

    async def delete_device(self, device_id: str) -> bool:
        async with self.orchestrator.leases.hold(device_id):
            return await self.registry.delete(device_id)

    # Commands

    async def issue_command(self, device_id: str, action: str, actor: Actor) -> CommandResult:
        return await self.orchestrator.issue_command(device_id, action, actor)

    async def refresh_status(self, device_id: str, actor: Optional[Actor] = None) -> CommandResult:
        return await self.orchestrator.refresh_status(device_id, actor)

    async def refresh_site(self, site_id: int, actor: Optional[Actor] = None) -> SweepReport:
        return await self.orchestrator.refresh_site(site_id, actor)

    async def manual_correction(self, device_id: str, state: str, actor: Actor) -> CommandResult:
        return await self.orchestrator.manual_correction(device_id, state, actor)

    async def provision_key(self, device_id: str, actor: Actor) -> CommandResult:
        return await self.orchestrator.provision_key(device_id, actor)

    # Passcodes

    async def list_passcodes(self, device_id: str, include_inactive: bool = False) -> list[dict[str, Any]]:
        rows = await self.registry.list_passcodes(device_id, active_only=not include_inactive)
        return [passcode_to_dict(r) for r in rows]

    async def create_passcode(
        self,
        device_id: str,
        passcode: str,
        name: str,
        starts_at: datetime,
        ends_at: datetime,
        actor: Actor,
    ) -> CommandResult:
        return await self.orchestrator.create_passcode(device_id, passcode, name, starts_at, ends_at, actor)

    async def delete_passcode(self, device_id: str, passcode_id: int, actor: Actor) -> CommandResult:
        return await self.orchestrator.delete_passcode(device_id, passcode_id, actor)

    # Access log

    async def access_history(
        self, device_id: str, limit: int = 100, offset: int = 0
    ) -> list[dict[str, Any]]:
        entries = await self.access_log.for_device(device_id, limit=limit, offset=offset)
        return [entry_to_dict(e) for e in entries]

    async def last_activity(self, device_id: str) -> Optional[dict[str, Any]]:
        return await self.orchestrator.last_activity(device_id)

    # Credentials and alerts

    async def update_credentials(
        self, site_id: int, vendor: LockVendor | str, **fields: Any
    ) -> dict[str, Any]:
        row, replaced = await self.credentials.save(site_id, vendor, **fields)
        await self.orchestrator.credentials_changed(replaced + [row.id])
        if replaced:
            self.orchestrator.alerts.clear(site_id, row.vendor)
        return {
            "id": row.id,
            "site_id": row.site_id,
            "vendor": row.vendor,
            "region": row.region,
            "replaced": replaced,
        }

    def active_alerts(self, site_id: Optional[int] = None) -> list[dict[str, Any]]:
        return [a.to_dict() for a in self.orchestrator.alerts.active(site_id)]
