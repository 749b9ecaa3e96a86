"""TTLock cloud adapter."""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from yacht_locks.config import LockVendor
from yacht_locks.core.results import (
    CommandAttempt,
    ErrorKind,
    LockStatus,
    ProvisionedKey,
    VendorError,
)
from yacht_locks.db.models import Device
from yacht_locks.vendors.base import LockAdapter, VendorCredentials

logger = logging.getLogger(__name__)

# TTLock errcode values
TOKEN_INVALID_CODES = frozenset({10003})
AUTH_FAILED_CODES = frozenset({10000, 10001, 10004, 10007, 10011})
DEVICE_NOT_FOUND_CODES = frozenset({-1003})
DEVICE_OFFLINE_CODES = frozenset({-2012, -3002, -3036})  # no gateway / gateway offline / lock offline
SERVER_BUSY_CODES = frozenset({-3003, 90000})

# queryOpenState "state" values
OPEN_STATE_LOCKED = 0
OPEN_STATE_UNLOCKED = 1


def _now_ms() -> str:
    return str(int(time.time() * 1000))


def _epoch_ms(moment: datetime) -> int:
    """Milliseconds since the epoch; naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


class TTLockAdapter(LockAdapter):
    """Lock adapter for the TTLock open platform (OAuth password grant)."""

    vendor = LockVendor.TTLOCK.value

    def __init__(
        self,
        timeout: float = 12.0,
        token_margin_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = "https://euopen.ttlock.com",
    ):
        super().__init__(timeout=timeout, token_margin_seconds=token_margin_seconds, client=client)
        self.base_url = base_url.rstrip("/")

    @staticmethod
    def _error_for(data: dict[str, Any], context: str) -> VendorError:
        code = data.get("errcode")
        msg = str(data.get("errmsg") or data.get("description") or "Unknown error")
        detail = f"TTLock {context} failed: {msg} (code: {code})"
        lowered = msg.lower()
        if "subscription" in lowered or "renew" in lowered:
            return VendorError(ErrorKind.SUBSCRIPTION_EXPIRED, detail)
        if code in TOKEN_INVALID_CODES or code in AUTH_FAILED_CODES:
            return VendorError(ErrorKind.AUTH_FAILED, detail)
        if code in DEVICE_NOT_FOUND_CODES:
            return VendorError(ErrorKind.DEVICE_NOT_FOUND, detail)
        if code in DEVICE_OFFLINE_CODES:
            return VendorError(ErrorKind.DEVICE_OFFLINE, detail)
        if code in SERVER_BUSY_CODES:
            return VendorError(ErrorKind.VENDOR_UNAVAILABLE, detail)
        return VendorError(ErrorKind.UNKNOWN, detail)

    async def _access_token(self, creds: VendorCredentials) -> str:
        cached = self._tokens.get(creds.credential_id)
        if cached:
            return cached.token

        if not creds.username or not creds.password_md5:
            raise VendorError(ErrorKind.AUTH_FAILED, "TTLock credentials need a username and password")

        response = await self._send_token_request(
            "POST",
            f"{self.base_url}/oauth2/token",
            data={
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
                "username": creds.username,
                "password": creds.password_md5,
                "grant_type": "password",
            },
        )
        data = self._json(response, "TTLock")
        token = data.get("access_token")
        if not token:
            error = self._error_for(data, "authentication")
            if error.kind is not ErrorKind.SUBSCRIPTION_EXPIRED:
                error = VendorError(ErrorKind.AUTH_FAILED, error.detail)
            raise error

        self._tokens.put(
            creds.credential_id, token, float(data.get("expires_in", 7200)), uid=data.get("uid")
        )
        logger.info("TTLock token refreshed for credential set %s", creds.credential_id)
        return token

    async def _call(
        self,
        creds: VendorCredentials,
        method: str,
        path: str,
        params: dict[str, Any],
        context: str,
        _retry_auth: bool = True,
    ) -> dict[str, Any]:
        """Call a v3 endpoint and return the body when ``errcode`` is 0 or absent."""
        token = await self._access_token(creds)
        fields = {
            "clientId": creds.client_id,
            "accessToken": token,
            "date": _now_ms(),
            **params,
        }
        url = f"{self.base_url}{path}"
        if method == "GET":
            response = await self._send("GET", url, params=fields)
        else:
            response = await self._send(method, url, data=fields)
        data = self._json(response, "TTLock")

        errcode = data.get("errcode", 0)
        if errcode == 0:
            return data
        if errcode in TOKEN_INVALID_CODES and _retry_auth:
            self._tokens.invalidate(creds.credential_id)
            return await self._call(creds, method, path, params, context, _retry_auth=False)
        raise self._error_for(data, context)

    async def status(self, device: Device, creds: VendorCredentials) -> LockStatus:
        lock_id = {"lockId": device.vendor_device_id}
        detail = await self._call(creds, "GET", "/v3/lock/detail", lock_id, "status check")
        battery = detail.get("electricQuantity")
        battery = max(0, min(100, int(battery))) if isinstance(battery, (int, float)) else None

        if detail.get("hasGateway") == 0:
            # Bluetooth-only lock: the cloud cannot see the bolt
            return LockStatus(is_locked=None, online=False, battery_level=battery, raw={"detail": detail})

        open_state = await self._call(creds, "GET", "/v3/lock/queryOpenState", lock_id, "open state")
        state = open_state.get("state")
        if state == OPEN_STATE_LOCKED:
            is_locked = True
        elif state == OPEN_STATE_UNLOCKED:
            is_locked = False
        else:
            is_locked = None

        return LockStatus(
            is_locked=is_locked,
            online=True,
            battery_level=battery,
            raw={"detail": detail, "open_state": open_state},
        )

    async def _gateway_command(
        self, device: Device, creds: VendorCredentials, action: str
    ) -> list[CommandAttempt]:
        path = f"/v3/lock/{action}"
        data = await self._call(creds, "POST", path, {"lockId": device.vendor_device_id}, action)
        logger.info("TTLock %s accepted for %s", action, device.vendor_device_id)
        return [
            CommandAttempt(
                attempt=1,
                method=path,
                code=action,
                accepted=True,
                response={"errcode": data.get("errcode", 0), "errmsg": data.get("errmsg")},
            )
        ]

    async def lock(self, device: Device, creds: VendorCredentials) -> list[CommandAttempt]:
        return await self._gateway_command(device, creds, "lock")

    async def unlock(self, device: Device, creds: VendorCredentials) -> list[CommandAttempt]:
        return await self._gateway_command(device, creds, "unlock")

    async def diagnostics(self, device: Device, creds: VendorCredentials) -> dict[str, Any]:
        lock_id = {"lockId": device.vendor_device_id}
        detail = await self._call(creds, "GET", "/v3/lock/detail", lock_id, "lock detail")

        try:
            open_state: Any = await self._call(creds, "GET", "/v3/lock/queryOpenState", lock_id, "open state")
        except VendorError as e:
            if e.kind in (ErrorKind.SUBSCRIPTION_EXPIRED, ErrorKind.AUTH_FAILED):
                raise
            open_state = {"error": e.detail}

        passcodes = await self._call(
            creds,
            "GET",
            "/v3/lock/listKeyboardPwd",
            {**lock_id, "pageNo": 1, "pageSize": 100},
            "passcode list",
        )
        return {
            "lock_detail": detail,
            "open_state": open_state,
            "passcodes": passcodes.get("list", []),
            "has_gateway": bool(detail.get("hasGateway")),
            "checked_at": datetime.utcnow().isoformat(),
        }

    async def provision_key(self, device: Device, creds: VendorCredentials) -> ProvisionedKey:
        raise VendorError(ErrorKind.UNKNOWN, "TTLock devices do not use key provisioning")

    async def create_passcode(
        self,
        device: Device,
        creds: VendorCredentials,
        passcode: str,
        name: str,
        starts_at: datetime,
        ends_at: datetime,
    ) -> int:
        data = await self._call(
            creds,
            "POST",
            "/v3/keyboardPwd/add",
            {
                "lockId": device.vendor_device_id,
                "keyboardPwd": passcode,
                "keyboardPwdName": name,
                "startDate": _epoch_ms(starts_at),
                "endDate": _epoch_ms(ends_at),
                "addType": 2,  # through the gateway
            },
            "passcode creation",
        )
        passcode_id = data.get("keyboardPwdId")
        if passcode_id is None:
            raise VendorError(ErrorKind.UNKNOWN, "TTLock passcode creation returned no keyboardPwdId")
        logger.info("TTLock passcode %r created on %s", name, device.vendor_device_id)
        return int(passcode_id)

    async def delete_passcode(
        self, device: Device, creds: VendorCredentials, vendor_passcode_id: int
    ) -> None:
        await self._call(
            creds,
            "POST",
            "/v3/keyboardPwd/delete",
            {
                "lockId": device.vendor_device_id,
                "keyboardPwdId": vendor_passcode_id,
                "deleteType": 2,
            },
            "passcode deletion",
        )
        logger.info("TTLock passcode %s deleted on %s", vendor_passcode_id, device.vendor_device_id)
