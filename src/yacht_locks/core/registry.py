"""Device registry and credential store: typed access to persisted rows."""

import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from yacht_locks.config import LockState, LockVendor, StateSource, requires_key_setup
from yacht_locks.core.results import LockStatus
from yacht_locks.db.database import session_scope
from yacht_locks.db.models import AccessLogEntry, CredentialSet, Device, Passcode, Site
from yacht_locks.vendors.base import VendorCredentials

logger = logging.getLogger(__name__)

# Fields an administrator may edit; telemetry and state are owned by the orchestrator
EDITABLE_DEVICE_FIELDS = frozenset(
    {"name", "location", "manufacturer", "model", "category", "vendor_device_id", "local_key"}
)


class DeviceHasHistory(Exception):
    """Raised when deleting a device that access-log rows still reference."""


class DuplicateDevice(Exception):
    """The vendor device id is already registered for this site."""


class CredentialConflict(Exception):
    """More than one active credential set exists for a site and vendor."""


class DeviceRegistry:
    """Reads and writes device rows, scoped by site."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker

    def transaction(self) -> AbstractAsyncContextManager[AsyncSession]:
        """One session for writes that must commit together."""
        return session_scope(self._session_maker)

    # Sites

    async def ensure_site(self, code: str, name: str) -> Site:
        async with session_scope(self._session_maker) as session:
            result = await session.execute(select(Site).where(Site.code == code))
            site = result.scalar_one_or_none()
            if site is None:
                site = Site(code=code, name=name)
                session.add(site)
                await session.flush()
                logger.info("Created site %s (%s)", code, name)
            return site

    async def get_site(self, site_id: int) -> Optional[Site]:
        async with session_scope(self._session_maker) as session:
            return await session.get(Site, site_id)

    async def site_ids_with_active_devices(self) -> list[int]:
        async with session_scope(self._session_maker) as session:
            result = await session.execute(
                select(Device.site_id).where(Device.is_active == True).distinct()  # noqa: E712
            )
            return sorted(result.scalars().all())

    # Devices

    async def get(self, device_id: str) -> Optional[Device]:
        async with session_scope(self._session_maker) as session:
            return await session.get(Device, device_id)

    async def list_for_site(self, site_id: int, active_only: bool = True) -> list[Device]:
        async with session_scope(self._session_maker) as session:
            query = select(Device).where(Device.site_id == site_id).order_by(Device.location, Device.name)
            if active_only:
                query = query.where(Device.is_active == True)  # noqa: E712
            result = await session.execute(query)
            return list(result.scalars().all())

    async def create(
        self,
        site_id: int,
        vendor: LockVendor | str,
        vendor_device_id: str,
        name: str,
        location: str,
        category: Optional[str] = None,
        manufacturer: Optional[str] = None,
        model: Optional[str] = None,
        local_key: Optional[str] = None,
    ) -> Device:
        vendor = LockVendor(vendor)
        try:
            async with session_scope(self._session_maker) as session:
                device = Device(
                    site_id=site_id,
                    vendor=vendor.value,
                    vendor_device_id=vendor_device_id,
                    name=name,
                    location=location,
                    category=category,
                    manufacturer=manufacturer,
                    model=model,
                    local_key=local_key,
                    current_lock_state=LockState.UNKNOWN.value,
                    requires_key_setup=requires_key_setup(vendor, category),
                    is_active=True,
                )
                session.add(device)
                await session.flush()
        except IntegrityError as e:
            raise DuplicateDevice(
                f"{vendor.value} device {vendor_device_id} is already registered at site {site_id}"
            ) from e
        logger.info("Registered %s device %s at site %s", vendor.value, device.id, site_id)
        return device

    async def update_details(self, device_id: str, **fields: Any) -> Optional[Device]:
        """Apply an administrative edit of descriptive fields."""
        unknown = set(fields) - EDITABLE_DEVICE_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

        try:
            async with session_scope(self._session_maker) as session:
                device = await session.get(Device, device_id)
                if device is None:
                    return None
                for key, value in fields.items():
                    setattr(device, key, value)
                if "category" in fields and not device.encryption_key:
                    device.requires_key_setup = requires_key_setup(device.vendor, device.category)
                await session.flush()
                return device
        except IntegrityError as e:
            raise DuplicateDevice(
                f"Device id {fields.get('vendor_device_id')} is already registered at this site"
            ) from e

    async def set_active(self, device_id: str, active: bool) -> Optional[Device]:
        async with session_scope(self._session_maker) as session:
            device = await session.get(Device, device_id)
            if device is None:
                return None
            device.is_active = active
            logger.info("Device %s %s", device_id, "activated" if active else "deactivated")
            return device

    async def delete(self, device_id: str) -> bool:
        """Hard-delete a device that has never been used."""
        async with session_scope(self._session_maker) as session:
            device = await session.get(Device, device_id)
            if device is None:
                return False
            history = await session.scalar(
                select(func.count(AccessLogEntry.id)).where(AccessLogEntry.device_id == device_id)
            )
            if history:
                raise DeviceHasHistory(
                    f"Device {device_id} has {history} access log entries; deactivate it instead"
                )
            await session.delete(device)
            logger.info("Deleted device %s", device_id)
            return True

    # State and telemetry, written by the orchestrator under the device lease.
    # Pass ``session`` to commit together with the access log row.

    async def apply_status(
        self,
        device_id: str,
        status: LockStatus,
        checked_at: datetime,
        session: Optional[AsyncSession] = None,
    ) -> None:
        values: dict[str, Any] = {"last_status_check": checked_at}
        if status.online is not None:
            values["online_status"] = status.online
        if status.battery_level is not None:
            values["battery_level"] = status.battery_level
        if status.is_locked is not None:
            values["current_lock_state"] = status.lock_state.value
            values["state_source"] = StateSource.DEVICE.value
            values["state_confirmed_at"] = checked_at
        await self._update(device_id, values, session)

    async def set_lock_state(
        self,
        device_id: str,
        state: LockState,
        source: StateSource,
        confirmed_at: Optional[datetime] = None,
        session: Optional[AsyncSession] = None,
    ) -> None:
        values: dict[str, Any] = {"current_lock_state": state.value, "state_source": source.value}
        if confirmed_at is not None:
            values["state_confirmed_at"] = confirmed_at
        await self._update(device_id, values, session)

    async def store_key(
        self, device_id: str, key: str, set_at: datetime, session: Optional[AsyncSession] = None
    ) -> None:
        await self._update(
            device_id,
            {"encryption_key": key, "encryption_key_set_at": set_at, "requires_key_setup": False},
            session,
        )

    async def _update(
        self, device_id: str, values: dict[str, Any], session: Optional[AsyncSession] = None
    ) -> None:
        statement = update(Device).where(Device.id == device_id).values(**values)
        if session is not None:
            await session.execute(statement)
            return
        async with session_scope(self._session_maker) as session:
            await session.execute(statement)

    # Passcodes

    async def list_passcodes(self, device_id: str, active_only: bool = True) -> list[Passcode]:
        async with session_scope(self._session_maker) as session:
            query = select(Passcode).where(Passcode.device_id == device_id).order_by(Passcode.starts_at)
            if active_only:
                query = query.where(Passcode.is_active == True)  # noqa: E712
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_passcode(self, passcode_id: int) -> Optional[Passcode]:
        async with session_scope(self._session_maker) as session:
            return await session.get(Passcode, passcode_id)

    async def add_passcode(
        self,
        device: Device,
        passcode: str,
        name: str,
        vendor_passcode_id: int,
        starts_at: datetime,
        ends_at: datetime,
        created_by: str,
        session: AsyncSession,
    ) -> Passcode:
        row = Passcode(
            device_id=device.id,
            site_id=device.site_id,
            passcode=passcode,
            name=name,
            vendor_passcode_id=vendor_passcode_id,
            starts_at=starts_at,
            ends_at=ends_at,
            is_active=True,
            created_by=created_by,
        )
        session.add(row)
        await session.flush()
        return row

    async def retire_passcode(self, passcode_id: int, session: AsyncSession) -> None:
        await session.execute(
            update(Passcode).where(Passcode.id == passcode_id).values(is_active=False)
        )


class CredentialStore:
    """Vendor credential sets, at most one active per site and vendor."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker

    async def get_active(self, site_id: int, vendor: LockVendor | str) -> Optional[CredentialSet]:
        vendor = LockVendor(vendor)
        async with session_scope(self._session_maker) as session:
            result = await session.execute(
                select(CredentialSet).where(
                    CredentialSet.site_id == site_id,
                    CredentialSet.vendor == vendor.value,
                    CredentialSet.is_active == True,  # noqa: E712
                )
            )
            rows = list(result.scalars().all())
        if len(rows) > 1:
            raise CredentialConflict(
                f"{len(rows)} active {vendor.value} credential sets for site {site_id}"
            )
        return rows[0] if rows else None

    async def save(
        self,
        site_id: int,
        vendor: LockVendor | str,
        client_id: str,
        client_secret: str,
        region: Optional[str] = None,
        username: Optional[str] = None,
        password_md5: Optional[str] = None,
    ) -> tuple[CredentialSet, list[int]]:
        """Store a new active credential set.

        Returns the new row and the ids of the sets it replaced.
        """
        vendor = LockVendor(vendor)
        async with session_scope(self._session_maker) as session:
            result = await session.execute(
                select(CredentialSet).where(
                    CredentialSet.site_id == site_id,
                    CredentialSet.vendor == vendor.value,
                    CredentialSet.is_active == True,  # noqa: E712
                )
            )
            replaced = []
            for old in result.scalars().all():
                old.is_active = False
                replaced.append(old.id)

            credentials = CredentialSet(
                site_id=site_id,
                vendor=vendor.value,
                client_id=client_id,
                client_secret=client_secret,
                region=region,
                username=username,
                password_md5=password_md5,
                is_active=True,
            )
            session.add(credentials)
            await session.flush()
            logger.info(
                "Saved %s credentials for site %s (replaced %d)", vendor.value, site_id, len(replaced)
            )
            return credentials, replaced


def to_vendor_credentials(row: CredentialSet) -> VendorCredentials:
    return VendorCredentials(
        credential_id=row.id,
        site_id=row.site_id,
        vendor=row.vendor,
        client_id=row.client_id,
        client_secret=row.client_secret,
        region=row.region,
        username=row.username,
        password_md5=row.password_md5,
    )
