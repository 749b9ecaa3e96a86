"""Lock orchestrator: the single entry point for every device command.

Each command runs under a per-device lease: the device row is re-read, the
preconditions are checked, the vendor adapter is called once (rate limited
per credential set and bounded by a timeout), and then the cached state and
the access log row are committed in one transaction before the lease is
released. Nothing is retried here; callers decide whether to try again.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from yacht_locks.config import (
    STAFF_ROLES,
    LockAction,
    LockState,
    LockVendor,
    LogAction,
    StateSource,
    location_label,
    requires_key_setup,
)
from yacht_locks.core.access_log import AccessLog
from yacht_locks.core.alerts import SubscriptionAlerts
from yacht_locks.core.leases import DeviceLeases
from yacht_locks.core.rate_limit import CredentialRateLimiter
from yacht_locks.core.registry import (
    CredentialConflict,
    CredentialStore,
    DeviceRegistry,
    to_vendor_credentials,
)
from yacht_locks.core.results import (
    CommandAttempt,
    CommandResult,
    ErrorKind,
    SweepReport,
    VendorError,
)
from yacht_locks.db.models import Device, Passcode
from yacht_locks.vendors.base import LockAdapter, VendorCredentials

logger = logging.getLogger(__name__)

# (device, title, message)
Notifier = Callable[[Device, str, str], Awaitable[None]]


@dataclass(frozen=True)
class Actor:
    """Who is issuing a command, as supplied by the auth layer."""

    name: str
    role: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return (self.role or "").lower() in STAFF_ROLES


SYSTEM_ACTOR = Actor(name="System", role="system")


def key_setup_pending(device: Device) -> bool:
    """True when lock/unlock must be refused until a key is provisioned."""
    if not requires_key_setup(device.vendor, device.category):
        return False
    return bool(device.requires_key_setup) or not device.encryption_key


def passcode_to_dict(row: Passcode) -> dict[str, Any]:
    return {
        "id": row.id,
        "device_id": row.device_id,
        "passcode": row.passcode,
        "name": row.name,
        "vendor_passcode_id": row.vendor_passcode_id,
        "starts_at": row.starts_at.isoformat(),
        "ends_at": row.ends_at.isoformat(),
        "is_active": row.is_active,
        "created_by": row.created_by,
    }


def _attempt_details(attempts: Optional[list[CommandAttempt]]) -> Optional[dict[str, Any]]:
    if not attempts:
        return None
    return {"attempts": [a.to_dict() for a in attempts]}


class LockOrchestrator:
    """Dispatches commands to vendor adapters and keeps state and audit in step."""

    def __init__(
        self,
        registry: DeviceRegistry,
        credentials: CredentialStore,
        access_log: AccessLog,
        adapters: Mapping[LockVendor, LockAdapter],
        timeout_seconds: float = 12.0,
        refresh_concurrency: int = 6,
        rate_limiter: Optional[CredentialRateLimiter] = None,
        alerts: Optional[SubscriptionAlerts] = None,
        notifier: Optional[Notifier] = None,
        schedule_recheck: Optional[Callable[[str], None]] = None,
    ):
        self._registry = registry
        self._credentials = credentials
        self._access_log = access_log
        self._adapters = dict(adapters)
        self._timeout = timeout_seconds
        self._refresh_concurrency = max(1, refresh_concurrency)
        self._rate_limiter = rate_limiter
        self._notifier = notifier
        self._schedule_recheck = schedule_recheck
        self.alerts = alerts or SubscriptionAlerts()
        self.leases = DeviceLeases()

    def set_recheck_scheduler(self, schedule_recheck: Optional[Callable[[str], None]]) -> None:
        self._schedule_recheck = schedule_recheck

    # Public operations

    async def issue_command(
        self, device_id: str, action: LockAction | str, actor: Actor
    ) -> CommandResult:
        """Run one command against a device and report the outcome."""
        try:
            action = LockAction(action)
        except ValueError:
            return CommandResult.failed(
                str(action), device_id, ErrorKind.UNKNOWN, f"Unsupported action: {action}"
            )

        if action is LockAction.STATUS:
            return await self.refresh_status(device_id, actor)
        if action is LockAction.PROVISION_KEY:
            return await self.provision_key(device_id, actor)
        if action is LockAction.DIAGNOSTICS:
            return await self._guarded(action, device_id, self._diagnostics(device_id, actor))
        return await self._guarded(action, device_id, self._door_command(device_id, action, actor))

    async def refresh_status(self, device_id: str, actor: Optional[Actor] = None) -> CommandResult:
        """Read status from the vendor and reconcile the cached state. Never raises."""
        return await self._guarded(
            LockAction.STATUS, device_id, self._refresh(device_id, actor or SYSTEM_ACTOR)
        )

    async def refresh_site(self, site_id: int, actor: Optional[Actor] = None) -> SweepReport:
        """Refresh every active device of a site; one failure never stops the rest."""
        devices = await self._registry.list_for_site(site_id)
        report = SweepReport(site_id=site_id, total=len(devices))
        if not devices:
            return report

        semaphore = asyncio.Semaphore(self._refresh_concurrency)

        async def refresh_one(device: Device) -> CommandResult:
            async with semaphore:
                return await self.refresh_status(device.id, actor)

        results = await asyncio.gather(*(refresh_one(d) for d in devices))
        for device, result in zip(devices, results):
            if result.success:
                report.refreshed.append(device.id)
            else:
                report.failures[device.id] = result.error_kind or ErrorKind.UNKNOWN

        logger.info(
            "Status sweep for site %s: %d refreshed, %d failed",
            site_id, len(report.refreshed), report.failed,
        )
        return report

    async def refresh_all_sites(self) -> list[SweepReport]:
        reports = []
        for site_id in await self._registry.site_ids_with_active_devices():
            reports.append(await self.refresh_site(site_id))
        return reports

    async def manual_correction(
        self, device_id: str, asserted_state: LockState | str, actor: Actor
    ) -> CommandResult:
        """Record the physical state a person has seen, without calling the vendor."""
        return await self._guarded(
            LogAction.MANUAL_CORRECTION,
            device_id,
            self._manual_correction(device_id, asserted_state, actor),
        )

    async def provision_key(self, device_id: str, actor: Actor) -> CommandResult:
        """Pair a secure key with the device and unlock remote lock/unlock."""
        return await self._guarded(
            LockAction.PROVISION_KEY, device_id, self._provision_key(device_id, actor)
        )

    async def create_passcode(
        self,
        device_id: str,
        passcode: str,
        name: str,
        starts_at: datetime,
        ends_at: datetime,
        actor: Actor,
    ) -> CommandResult:
        """Issue a keypad code on the lock and remember it. Staff only."""
        return await self._guarded(
            LogAction.CREATE_PASSCODE,
            device_id,
            self._create_passcode(device_id, passcode, name, starts_at, ends_at, actor),
        )

    async def delete_passcode(self, device_id: str, passcode_id: int, actor: Actor) -> CommandResult:
        """Remove a keypad code from the lock and retire its record. Staff only."""
        return await self._guarded(
            LogAction.DELETE_PASSCODE, device_id, self._delete_passcode(device_id, passcode_id, actor)
        )

    async def last_activity(self, device_id: str) -> Optional[dict[str, Any]]:
        entry = await self._access_log.last_activity(device_id)
        if entry is None:
            return None
        return {
            "actor_name": entry.actor_name,
            "action": entry.action,
            "timestamp": entry.timestamp.isoformat(),
        }

    async def credentials_changed(self, credential_ids: list[int]) -> None:
        """Drop cached vendor tokens for edited or replaced credential sets."""
        for adapter in self._adapters.values():
            for credential_id in credential_ids:
                adapter.invalidate(credential_id)

    # Command implementations (always called through _guarded)

    async def _door_command(self, device_id: str, action: LockAction, actor: Actor) -> CommandResult:
        log_action = LogAction(action.value)
        target = LockState.LOCKED if action is LockAction.LOCK else LockState.UNLOCKED

        async with self.leases.hold(device_id):
            device = await self._registry.get(device_id)
            rejected = await self._reject_unusable(device, device_id, log_action, actor)
            if rejected:
                return rejected

            if key_setup_pending(device):
                return await self._fail(
                    device, log_action, actor, ErrorKind.KEY_SETUP_REQUIRED,
                    "Device requires encryption key setup. Run provision_key first.",
                )

            try:
                adapter = self._adapter_for(device)
                creds = await self._resolve_credentials(device)
                call = adapter.lock if action is LockAction.LOCK else adapter.unlock
                attempts = await self._call_adapter(call, device, creds)
            except VendorError as e:
                return await self._fail(
                    device, log_action, actor, e.kind, e.detail, details=_attempt_details(e.attempts)
                )

            # The cloud accepted the command; the bolt may not have moved yet
            async with self._registry.transaction() as session:
                await self._registry.set_lock_state(
                    device.id, target, StateSource.OPTIMISTIC, session=session
                )
                await self._log(
                    device, log_action, actor, success=True,
                    details=_attempt_details(attempts), session=session,
                )
            self.alerts.clear(device.site_id, device.vendor)

        logger.info("%s %sed %s (%s)", actor.name, action.value, device.name, device.id)
        if self._schedule_recheck:
            self._schedule_recheck(device.id)
        await self._notify_activity(device, action, actor)

        return CommandResult(
            success=True,
            action=action.value,
            device_id=device.id,
            lock_state=target,
            tentative=True,
        )

    async def _refresh(self, device_id: str, actor: Actor) -> CommandResult:
        async with self.leases.hold(device_id):
            device = await self._registry.get(device_id)
            rejected = await self._reject_unusable(device, device_id, LogAction.STATUS, actor)
            if rejected:
                return rejected

            try:
                adapter = self._adapter_for(device)
                creds = await self._resolve_credentials(device)
                status = await self._call_adapter(adapter.status, device, creds)
            except VendorError as e:
                return await self._fail(device, LogAction.STATUS, actor, e.kind, e.detail)

            checked_at = datetime.utcnow()
            async with self._registry.transaction() as session:
                await self._registry.apply_status(device.id, status, checked_at, session=session)
                await self._log(
                    device,
                    LogAction.STATUS,
                    actor,
                    success=True,
                    details={
                        "lock_state": status.lock_state.value,
                        "online": status.online,
                        "battery_level": status.battery_level,
                    },
                    session=session,
                )
            self.alerts.clear(device.site_id, device.vendor)

        if status.is_locked is None:
            # Lock did not report its bolt; keep whatever we knew
            lock_state = LockState(device.current_lock_state)
            tentative = device.state_source == StateSource.OPTIMISTIC.value
        else:
            lock_state = status.lock_state
            tentative = False

        return CommandResult(
            success=True,
            action=LockAction.STATUS.value,
            device_id=device.id,
            lock_state=lock_state,
            tentative=tentative,
            status=status,
        )

    async def _diagnostics(self, device_id: str, actor: Actor) -> CommandResult:
        async with self.leases.hold(device_id):
            device = await self._registry.get(device_id)
            rejected = await self._reject_unusable(device, device_id, LogAction.DIAGNOSTICS, actor)
            if rejected:
                return rejected

            try:
                adapter = self._adapter_for(device)
                creds = await self._resolve_credentials(device)
                report = await self._call_adapter(adapter.diagnostics, device, creds)
            except VendorError as e:
                return await self._fail(device, LogAction.DIAGNOSTICS, actor, e.kind, e.detail)

            await self._log(device, LogAction.DIAGNOSTICS, actor, success=True)
            self.alerts.clear(device.site_id, device.vendor)

        return CommandResult(
            success=True,
            action=LockAction.DIAGNOSTICS.value,
            device_id=device.id,
            lock_state=LockState(device.current_lock_state),
            tentative=device.state_source == StateSource.OPTIMISTIC.value,
            diagnostics=report,
        )

    async def _manual_correction(
        self, device_id: str, asserted_state: LockState | str, actor: Actor
    ) -> CommandResult:
        action = LogAction.MANUAL_CORRECTION
        try:
            state = LockState(asserted_state)
        except ValueError:
            state = LockState.UNKNOWN

        async with self.leases.hold(device_id):
            device = await self._registry.get(device_id)
            rejected = await self._reject_unusable(device, device_id, action, actor)
            if rejected:
                return rejected
            if not actor.is_staff:
                return await self._fail(
                    device, action, actor, ErrorKind.PERMISSION_DENIED,
                    "Only staff can correct lock state",
                )
            if state is LockState.UNKNOWN:
                return await self._fail(
                    device, action, actor, ErrorKind.UNKNOWN,
                    f"Asserted state must be locked or unlocked, got {asserted_state!r}",
                )

            corrected_at = datetime.utcnow()
            async with self._registry.transaction() as session:
                await self._registry.set_lock_state(
                    device.id, state, StateSource.MANUAL, confirmed_at=corrected_at, session=session
                )
                await self._log(
                    device,
                    action,
                    actor,
                    success=True,
                    details={"previous_state": device.current_lock_state, "asserted_state": state.value},
                    session=session,
                )

        logger.info(
            "%s corrected %s from %s to %s", actor.name, device.id, device.current_lock_state, state.value
        )
        return CommandResult(
            success=True, action=action.value, device_id=device.id, lock_state=state
        )

    async def _provision_key(self, device_id: str, actor: Actor) -> CommandResult:
        action = LogAction.PROVISION_KEY
        async with self.leases.hold(device_id):
            device = await self._registry.get(device_id)
            rejected = await self._reject_unusable(device, device_id, action, actor)
            if rejected:
                return rejected
            if not actor.is_staff:
                return await self._fail(
                    device, action, actor, ErrorKind.PERMISSION_DENIED,
                    "Only staff can set up encryption keys",
                )

            try:
                adapter = self._adapter_for(device)
                creds = await self._resolve_credentials(device)
                provisioned = await self._call_adapter(adapter.provision_key, device, creds)
            except VendorError as e:
                return await self._fail(
                    device, action, actor, e.kind, e.detail, details=_attempt_details(e.attempts)
                )

            key_set_at = datetime.utcnow()
            details = {"key_set_at": key_set_at.isoformat(), **(_attempt_details(provisioned.attempts) or {})}
            async with self._registry.transaction() as session:
                await self._registry.store_key(device.id, provisioned.key, key_set_at, session=session)
                await self._log(device, action, actor, success=True, details=details, session=session)
            self.alerts.clear(device.site_id, device.vendor)

        logger.info("Encryption key provisioned for %s by %s", device.id, actor.name)
        return CommandResult(
            success=True,
            action=action.value,
            device_id=device.id,
            lock_state=LockState(device.current_lock_state),
        )

    async def _create_passcode(
        self,
        device_id: str,
        passcode: str,
        name: str,
        starts_at: datetime,
        ends_at: datetime,
        actor: Actor,
    ) -> CommandResult:
        action = LogAction.CREATE_PASSCODE
        async with self.leases.hold(device_id):
            device = await self._registry.get(device_id)
            rejected = await self._reject_unusable(device, device_id, action, actor)
            if rejected:
                return rejected
            if not actor.is_staff:
                return await self._fail(
                    device, action, actor, ErrorKind.PERMISSION_DENIED, "Only staff can create passcodes"
                )
            if ends_at <= starts_at:
                return await self._fail(
                    device, action, actor, ErrorKind.UNKNOWN, "Passcode must end after it starts"
                )

            try:
                adapter = self._adapter_for(device)
                creds = await self._resolve_credentials(device)
                call = functools.partial(
                    adapter.create_passcode,
                    passcode=passcode,
                    name=name,
                    starts_at=starts_at,
                    ends_at=ends_at,
                )
                vendor_passcode_id = await self._call_adapter(call, device, creds)
            except VendorError as e:
                return await self._fail(device, action, actor, e.kind, e.detail)

            async with self._registry.transaction() as session:
                row = await self._registry.add_passcode(
                    device, passcode, name, vendor_passcode_id, starts_at, ends_at,
                    created_by=actor.name, session=session,
                )
                await self._log(
                    device, action, actor, success=True,
                    details={"passcode_id": row.id, "name": name, "vendor_passcode_id": vendor_passcode_id},
                    session=session,
                )
            self.alerts.clear(device.site_id, device.vendor)

        logger.info("%s created passcode %r on %s", actor.name, name, device.id)
        return CommandResult(
            success=True,
            action=action.value,
            device_id=device.id,
            lock_state=LockState(device.current_lock_state),
            passcode=passcode_to_dict(row),
        )

    async def _delete_passcode(self, device_id: str, passcode_id: int, actor: Actor) -> CommandResult:
        action = LogAction.DELETE_PASSCODE
        async with self.leases.hold(device_id):
            device = await self._registry.get(device_id)
            rejected = await self._reject_unusable(device, device_id, action, actor)
            if rejected:
                return rejected
            if not actor.is_staff:
                return await self._fail(
                    device, action, actor, ErrorKind.PERMISSION_DENIED, "Only staff can delete passcodes"
                )
            row = await self._registry.get_passcode(passcode_id)
            if row is None or row.device_id != device.id or not row.is_active:
                return await self._fail(
                    device, action, actor, ErrorKind.UNKNOWN, f"Passcode {passcode_id} not found on this lock"
                )

            try:
                adapter = self._adapter_for(device)
                creds = await self._resolve_credentials(device)
                call = functools.partial(adapter.delete_passcode, vendor_passcode_id=row.vendor_passcode_id)
                await self._call_adapter(call, device, creds)
            except VendorError as e:
                return await self._fail(device, action, actor, e.kind, e.detail)

            async with self._registry.transaction() as session:
                await self._registry.retire_passcode(row.id, session=session)
                await self._log(
                    device, action, actor, success=True,
                    details={"passcode_id": row.id, "name": row.name},
                    session=session,
                )
            self.alerts.clear(device.site_id, device.vendor)

        logger.info("%s deleted passcode %r on %s", actor.name, row.name, device.id)
        row.is_active = False
        return CommandResult(
            success=True,
            action=action.value,
            device_id=device.id,
            lock_state=LockState(device.current_lock_state),
            passcode=passcode_to_dict(row),
        )

    # Helpers

    async def _guarded(self, action: Any, device_id: str, operation: Awaitable[CommandResult]) -> CommandResult:
        """Run an operation so that nothing escapes to the caller as an exception."""
        try:
            return await operation
        except Exception as e:
            logger.exception("Unexpected error running %s on %s", getattr(action, "value", action), device_id)
            return CommandResult.failed(action, device_id, ErrorKind.UNKNOWN, str(e) or type(e).__name__)

    async def _reject_unusable(
        self, device: Optional[Device], device_id: str, action: LogAction, actor: Actor
    ) -> Optional[CommandResult]:
        if device is None:
            # No row to attach an access log entry to
            logger.warning("%s requested %s on unknown device %s", actor.name, action.value, device_id)
            return CommandResult.failed(action, device_id, ErrorKind.DEVICE_NOT_FOUND, "Device not found")
        if not device.is_active:
            return await self._fail(
                device, action, actor, ErrorKind.DEVICE_NOT_FOUND, "Device is not active"
            )
        return None

    def _adapter_for(self, device: Device) -> LockAdapter:
        try:
            return self._adapters[LockVendor(device.vendor)]
        except (KeyError, ValueError):
            raise VendorError(ErrorKind.UNKNOWN, f"No adapter for vendor {device.vendor!r}")

    async def _resolve_credentials(self, device: Device) -> VendorCredentials:
        try:
            row = await self._credentials.get_active(device.site_id, device.vendor)
        except CredentialConflict as e:
            raise VendorError(ErrorKind.AUTH_FAILED, str(e))
        if row is None:
            raise VendorError(
                ErrorKind.AUTH_FAILED, f"{device.vendor} credentials not configured for this site"
            )
        return to_vendor_credentials(row)

    async def _call_adapter(
        self,
        method: Callable[[Device, VendorCredentials], Awaitable[Any]],
        device: Device,
        creds: VendorCredentials,
    ) -> Any:
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire(creds.credential_id)
        try:
            return await asyncio.wait_for(method(device, creds), timeout=self._timeout)
        except asyncio.TimeoutError:
            raise VendorError(
                ErrorKind.VENDOR_UNAVAILABLE,
                f"No response from {device.vendor} within {self._timeout:g}s",
            )
        except VendorError:
            raise
        except Exception as e:
            logger.exception("%s adapter raised unexpectedly for %s", device.vendor, device.id)
            raise VendorError(ErrorKind.UNKNOWN, str(e) or type(e).__name__) from e

    async def _fail(
        self,
        device: Device,
        action: LogAction,
        actor: Actor,
        kind: ErrorKind,
        detail: str,
        details: Optional[dict[str, Any]] = None,
    ) -> CommandResult:
        detail = detail or kind.value
        logger.warning("%s %s on %s failed: %s (%s)", actor.name, action.value, device.id, kind.value, detail)
        if kind is ErrorKind.SUBSCRIPTION_EXPIRED:
            self.alerts.raise_alert(device.site_id, device.vendor, detail)
        await self._log(
            device, action, actor, success=False, error_kind=kind, error_message=detail, details=details
        )
        return CommandResult.failed(action, device.id, kind, detail)

    async def _log(
        self,
        device: Device,
        action: LogAction,
        actor: Actor,
        success: bool,
        error_kind: Optional[ErrorKind] = None,
        error_message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        session: Optional[AsyncSession] = None,
    ) -> None:
        await self._access_log.append(
            device,
            action,
            actor_name=actor.name,
            actor_role=actor.role,
            success=success,
            error_kind=error_kind.value if error_kind else None,
            error_message=error_message,
            details=details,
            session=session,
        )

    async def _notify_activity(self, device: Device, action: LockAction, actor: Actor) -> None:
        if self._notifier is None:
            return
        verb = "unlocked" if action is LockAction.UNLOCK else "locked"
        title = f"Smart Lock {verb.capitalize()}"
        message = f"{actor.name} {verb} the {location_label(device.location).lower()}"
        try:
            await self._notifier(device, title, message)
        except Exception as e:
            logger.warning("Activity notification for %s failed: %s", device.id, e)
