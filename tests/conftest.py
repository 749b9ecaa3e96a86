import asyncio
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from yacht_locks.config import LockVendor
from yacht_locks.core.access_log import AccessLog
from yacht_locks.core.orchestrator import LockOrchestrator
from yacht_locks.core.registry import CredentialStore, DeviceRegistry
from yacht_locks.core.results import CommandAttempt, LockStatus, ProvisionedKey, VendorError
from yacht_locks.db.database import init_db
from yacht_locks.vendors.base import LockAdapter


class FakeAdapter(LockAdapter):
    """In-memory adapter that records calls and can be told to fail or stall."""

    def __init__(self, vendor: LockVendor, delay: float = 0.0):
        super().__init__()
        self.vendor = vendor.value
        self.delay = delay
        self.status_result = LockStatus(is_locked=True, online=True, battery_level=80)
        self.errors: dict[str, VendorError] = {}
        self.calls: list[tuple[str, str]] = []
        self.key = "00112233445566778899aabbccddeeff"
        self._in_flight: dict[str, int] = {}
        self.max_in_flight: dict[str, int] = {}
        self.max_total_in_flight = 0
        self.passcodes: dict[int, str] = {}

    async def _run(self, op: str, device, result: Any = None) -> Any:
        self.calls.append((op, device.id))
        self._in_flight[device.id] = self._in_flight.get(device.id, 0) + 1
        self.max_in_flight[device.id] = max(
            self.max_in_flight.get(device.id, 0), self._in_flight[device.id]
        )
        self.max_total_in_flight = max(self.max_total_in_flight, sum(self._in_flight.values()))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if op in self.errors:
                raise self.errors[op]
            return result
        finally:
            self._in_flight[device.id] -= 1

    def calls_for(self, op: Optional[str] = None) -> list[tuple[str, str]]:
        return [c for c in self.calls if op is None or c[0] == op]

    async def status(self, device, creds):
        return await self._run("status", device, self.status_result)

    async def lock(self, device, creds):
        return await self._run("lock", device, [CommandAttempt(1, "lock_app", "lock_app", True, value=True)])

    async def unlock(self, device, creds):
        return await self._run(
            "unlock", device, [CommandAttempt(1, "unlock_app", "unlock_app", True, value=True)]
        )

    async def diagnostics(self, device, creds):
        return await self._run("diagnostics", device, {"device_info": {"id": device.vendor_device_id}})

    async def provision_key(self, device, creds):
        attempts = [CommandAttempt(1, "Raw hex key", "remote_no_pd_setkey", True)]
        return await self._run("provision_key", device, ProvisionedKey(self.key, attempts))

    async def create_passcode(self, device, creds, passcode, name, starts_at, ends_at):
        passcode_id = 9000 + len(self.passcodes)
        await self._run("create_passcode", device)
        self.passcodes[passcode_id] = passcode
        return passcode_id

    async def delete_passcode(self, device, creds, vendor_passcode_id):
        await self._run("delete_passcode", device)
        del self.passcodes[vendor_passcode_id]


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so concurrent sessions each get their own connection
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'locks.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def registry(session_maker):
    return DeviceRegistry(session_maker)


@pytest.fixture
def credentials(session_maker):
    return CredentialStore(session_maker)


@pytest.fixture
def access_log(session_maker):
    return AccessLog(session_maker)


@pytest_asyncio.fixture
async def site(registry, credentials):
    site = await registry.ensure_site("PEQUOD", "Pequod")
    await credentials.save(site.id, LockVendor.TUYA, "tuya-client", "tuya-secret", region="eu")
    await credentials.save(
        site.id,
        LockVendor.TTLOCK,
        "tt-client",
        "tt-secret",
        username="crew@pequod.example",
        password_md5="5f4dcc3b5aa765d61d8327deb882cf99",
    )
    return site


@pytest.fixture
def tuya():
    return FakeAdapter(LockVendor.TUYA)


@pytest.fixture
def ttlock():
    return FakeAdapter(LockVendor.TTLOCK)


@pytest.fixture
def rechecks():
    return []


@pytest.fixture
def orchestrator(registry, credentials, access_log, tuya, ttlock, rechecks):
    return LockOrchestrator(
        registry,
        credentials,
        access_log,
        {LockVendor.TUYA: tuya, LockVendor.TTLOCK: ttlock},
        timeout_seconds=1.0,
        refresh_concurrency=4,
        schedule_recheck=rechecks.append,
    )


@pytest.fixture
def slow_tuya():
    return FakeAdapter(LockVendor.TUYA, delay=0.05)
