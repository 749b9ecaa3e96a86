"""Tuya cloud adapter."""

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime
from typing import Any, Optional

import httpx
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from yacht_locks.config import TUYA_REGION_URLS, LockVendor, requires_key_setup
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

# Tuya business error codes
SUBSCRIPTION_EXPIRED_CODE = 28841002
TOKEN_EXPIRED_CODES = frozenset({1010, 1011})  # token invalid / token expired
AUTH_FAILED_CODES = frozenset({1004, 1012, 1013, 2406})  # bad sign, bad client, bad uid
DEVICE_OFFLINE_CODES = frozenset({2001})
DEVICE_NOT_FOUND_CODES = frozenset({1106, 2009})  # not under this project / not exist
COMMAND_UNSUPPORTED_CODES = frozenset({2008})
SERVER_BUSY_CODES = frozenset({500, 501, 1001})

# Data-point codes that report the bolt position, in order of preference
LOCK_STATE_CODES = ("lock_motor_state", "locked", "doorlock_state", "lock", "manual_lock")
BATTERY_PERCENT_CODES = ("residual_electricity", "battery_percentage", "battery_value")
BATTERY_STATE_LEVELS = {"high": 100, "middle": 50, "low": 10, "poweroff": 0}

# Locks expose different data points; these are tried in order until one is accepted
UNLOCK_COMMANDS: list[dict[str, Any]] = [
    {"code": "remote_no_dp_key", "value": "unlock"},
    {"code": "unlock_app", "value": True},
    {"code": "unlock", "value": True},
    {"code": "unlock_door", "value": True},
    {"code": "remote_unlock", "value": True},
    {"code": "manual_lock", "value": False},
]
LOCK_COMMANDS: list[dict[str, Any]] = [
    {"code": "remote_no_dp_key", "value": "lock"},
    {"code": "lock_app", "value": True},
    {"code": "lock", "value": True},
    {"code": "lock_door", "value": True},
    {"code": "remote_lock", "value": True},
    {"code": "lock_motor_state", "value": True},
    {"code": "manual_lock", "value": True},
]

SECURE_COMMAND_CODE = "remote_no_dp_key"
SET_KEY_COMMAND_CODE = "remote_no_pd_setkey"
ZERO_IV = bytes(16)


def parse_lock_state(value: Any) -> Optional[bool]:
    """Interpret a lock-state data point. None when the value is not recognised."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.lower()
        if lowered in ("locked", "lock", "closed", "true"):
            return True
        if lowered in ("unlocked", "unlock", "open", "false"):
            return False
    return None


def parse_status_codes(codes: list[dict[str, Any]]) -> LockStatus:
    """Normalize a Tuya status data-point list."""
    by_code = {item.get("code"): item.get("value") for item in codes if isinstance(item, dict)}

    is_locked = None
    for code in LOCK_STATE_CODES:
        if code in by_code:
            is_locked = parse_lock_state(by_code[code])
            break

    battery = None
    for code in BATTERY_PERCENT_CODES:
        value = by_code.get(code)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            battery = max(0, min(100, int(value)))
            break
    if battery is None and isinstance(by_code.get("battery_state"), str):
        battery = BATTERY_STATE_LEVELS.get(by_code["battery_state"].lower())

    # A live status payload means the cloud can reach the lock
    return LockStatus(is_locked=is_locked, online=True, battery_level=battery, raw=codes)


def encrypt_door_payload(key_hex: str, plaintext: str) -> str:
    """AES-128-CBC under the provisioned key (zero IV, PKCS7), base64 encoded."""
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode()) + padder.finalize()
    encryptor = Cipher(algorithms.AES(bytes.fromhex(key_hex[:32])), modes.CBC(ZERO_IV)).encryptor()
    return base64.b64encode(encryptor.update(padded) + encryptor.finalize()).decode()


def secure_door_values(
    key_hex: str, action: str, timestamp_ms: int | None = None
) -> list[tuple[str, Any]]:
    """Values for the secure command of a key-provisioned lock, in the order tried.

    Firmware differs in what it expects, so the encrypted JSON form comes
    first and plainer encodings follow.
    """
    t = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    payload = json.dumps({"action": action, "timestamp": t}, separators=(",", ":"))
    return [
        ("AES-128-CBC with JSON payload", encrypt_door_payload(key_hex, payload)),
        (f'Plain string "{action}"', action),
        (f"Boolean true for {action}", True),
        ('String value "true"', "true"),
        (f'Base64 "{action}"', base64.b64encode(action.encode()).decode()),
        (f'AES-128-CBC with simple "{action}" string', encrypt_door_payload(key_hex, action)),
        ("Hex encoded command", action.encode().hex()),
    ]


def key_setup_values(key_hex: str, timestamp_ms: int | None = None) -> list[tuple[str, str]]:
    """Encodings of a new key for the set-key command, in the order tried."""
    t = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    wrapped = json.dumps({"key": key_hex, "timestamp": t}, separators=(",", ":"))
    return [
        ("JSON + base64", base64.b64encode(wrapped.encode()).decode()),
        ("Raw hex key", key_hex),
        ("Raw base64 key", base64.b64encode(bytes.fromhex(key_hex)).decode()),
        ("Simple key string", key_hex.upper()),
    ]


def _response_summary(data: dict[str, Any]) -> dict[str, Any]:
    return {key: data[key] for key in ("success", "code", "msg", "result") if key in data}


class TuyaAdapter(LockAdapter):
    """Lock adapter for the Tuya IoT cloud (HMAC-SHA256 signed OpenAPI)."""

    vendor = LockVendor.TUYA.value

    def __init__(
        self,
        timeout: float = 12.0,
        token_margin_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        default_region: str = "us",
    ):
        super().__init__(timeout=timeout, token_margin_seconds=token_margin_seconds, client=client)
        self.default_region = (default_region or "us").lower()

    def base_url(self, creds: VendorCredentials) -> str:
        region = (creds.region or self.default_region).lower()
        return TUYA_REGION_URLS.get(region) or TUYA_REGION_URLS.get(
            self.default_region, TUYA_REGION_URLS["us"]
        )

    @staticmethod
    def _sign(
        creds: VendorCredentials,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: str = "",
        access_token: str = "",
    ) -> dict[str, str]:
        """Build the signed header set for a request."""
        t = str(int(time.time() * 1000))
        query = "&".join(f"{key}={params[key]}" for key in sorted(params)) if params else ""
        url = path + (f"?{query}" if query else "")
        content_hash = hashlib.sha256(body.encode()).hexdigest()
        string_to_sign = "\n".join([method.upper(), content_hash, "", url])
        sign_str = creds.client_id + access_token + t + string_to_sign
        sign = hmac.new(
            creds.client_secret.encode(), sign_str.encode(), hashlib.sha256
        ).hexdigest().upper()

        headers = {
            "client_id": creds.client_id,
            "sign": sign,
            "t": t,
            "sign_method": "HMAC-SHA256",
        }
        if access_token:
            headers["access_token"] = access_token
        return headers

    @staticmethod
    def _error_for(data: dict[str, Any], context: str) -> VendorError:
        code = data.get("code")
        msg = data.get("msg") or "no message"
        detail = f"Tuya {context} failed: {msg} (code: {code})"
        if code == SUBSCRIPTION_EXPIRED_CODE:
            return VendorError(
                ErrorKind.SUBSCRIPTION_EXPIRED,
                "Tuya Cloud Development subscription has expired",
            )
        if code in TOKEN_EXPIRED_CODES or code in AUTH_FAILED_CODES:
            return VendorError(ErrorKind.AUTH_FAILED, detail)
        if code in DEVICE_OFFLINE_CODES:
            return VendorError(ErrorKind.DEVICE_OFFLINE, detail)
        if code in DEVICE_NOT_FOUND_CODES:
            return VendorError(ErrorKind.DEVICE_NOT_FOUND, detail)
        if code in SERVER_BUSY_CODES:
            return VendorError(ErrorKind.VENDOR_UNAVAILABLE, detail)
        if code in COMMAND_UNSUPPORTED_CODES:
            return VendorError(ErrorKind.UNKNOWN, f"Tuya {context} not supported by this device")
        return VendorError(ErrorKind.UNKNOWN, detail)

    async def _authenticate(self, creds: VendorCredentials) -> str:
        cached = self._tokens.get(creds.credential_id)
        if cached:
            return cached.token

        path = "/v1.0/token"
        params = {"grant_type": "1"}
        headers = self._sign(creds, "GET", path, params)
        response = await self._send_token_request(
            "GET", f"{self.base_url(creds)}{path}", params=params, headers=headers
        )
        data = self._json(response, "Tuya")

        if not data.get("success"):
            error = self._error_for(data, "authentication")
            if error.kind is not ErrorKind.SUBSCRIPTION_EXPIRED:
                # Every other failure while fetching a token is a credentials problem
                error = VendorError(ErrorKind.AUTH_FAILED, error.detail)
            raise error

        result = data.get("result") or {}
        token = result.get("access_token")
        if not token:
            raise VendorError(ErrorKind.AUTH_FAILED, "Tuya authentication returned no access token")
        self._tokens.put(
            creds.credential_id, token, float(result.get("expire_time", 7200)), uid=result.get("uid")
        )
        logger.info("Tuya token refreshed for credential set %s", creds.credential_id)
        return token

    async def _request(
        self,
        creds: VendorCredentials,
        method: str,
        path: str,
        body: Optional[dict[str, Any]] = None,
        _retry_auth: bool = True,
    ) -> dict[str, Any]:
        """Send a signed request and return the decoded envelope.

        Envelopes with ``success: false`` are returned as-is; callers decide
        whether the business code is fatal.
        """
        token = await self._authenticate(creds)
        body_text = json.dumps(body, separators=(",", ":")) if body is not None else ""
        headers = self._sign(creds, method, path, body=body_text, access_token=token)
        if body is not None:
            headers["Content-Type"] = "application/json"

        response = await self._send(
            method,
            f"{self.base_url(creds)}{path}",
            headers=headers,
            content=body_text or None,
        )
        data = self._json(response, "Tuya")

        if not data.get("success") and data.get("code") in TOKEN_EXPIRED_CODES and _retry_auth:
            # The cloud dropped our token early; nothing was executed, fetch a new one
            self._tokens.invalidate(creds.credential_id)
            return await self._request(creds, method, path, body, _retry_auth=False)
        return data

    async def _get(self, creds: VendorCredentials, path: str, context: str) -> Any:
        data = await self._request(creds, "GET", path)
        if not data.get("success"):
            raise self._error_for(data, context)
        return data.get("result")

    async def _send_commands(
        self, device: Device, creds: VendorCredentials, commands: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return await self._request(
            creds,
            "POST",
            f"/v1.0/devices/{device.vendor_device_id}/commands",
            body={"commands": commands},
        )

    async def _try_commands(
        self,
        device: Device,
        creds: VendorCredentials,
        candidates: list[tuple[str, dict[str, Any]]],
        action: str,
        record_values: bool = True,
    ) -> list[CommandAttempt]:
        """Send candidate commands until one is accepted.

        Only "command not supported" style rejections move on to the next
        candidate; account, device and transport failures are raised at once.
        Every payload sent is returned (or attached to the error) so callers
        can see which form the lock took.
        """
        attempts: list[CommandAttempt] = []
        for number, (method, command) in enumerate(candidates, start=1):
            try:
                data = await self._send_commands(device, creds, [command])
            except VendorError as e:
                e.attempts = attempts
                raise
            accepted = bool(data.get("success"))
            attempts.append(
                CommandAttempt(
                    attempt=number,
                    method=method,
                    code=command["code"],
                    accepted=accepted,
                    value=command["value"] if record_values else None,
                    response=_response_summary(data),
                )
            )
            if accepted:
                logger.info("Tuya %s accepted for %s using %s", action, device.vendor_device_id, method)
                return attempts
            error = self._error_for(data, action)
            if error.kind is not ErrorKind.UNKNOWN:
                error.attempts = attempts
                raise error
            logger.debug("Tuya %s rejected for %s: %s", action, method, data)

        raise VendorError(
            ErrorKind.UNKNOWN,
            f"All {action} methods failed. Tried: {', '.join(a.method for a in attempts)}. "
            f"This lock may require special setup or may not support remote {action}.",
            attempts=attempts,
        )

    async def _door_command(
        self, device: Device, creds: VendorCredentials, action: str
    ) -> list[CommandAttempt]:
        if requires_key_setup(LockVendor.TUYA, device.category):
            if not device.encryption_key:
                raise VendorError(ErrorKind.UNKNOWN, "Device has no provisioned key")
            candidates = [
                (method, {"code": SECURE_COMMAND_CODE, "value": value})
                for method, value in secure_door_values(device.encryption_key, action)
            ]
            return await self._try_commands(device, creds, candidates, f"secure {action}")

        commands = LOCK_COMMANDS if action == "lock" else UNLOCK_COMMANDS
        return await self._try_commands(device, creds, [(c["code"], c) for c in commands], action)

    async def status(self, device: Device, creds: VendorCredentials) -> LockStatus:
        codes = await self._get(creds, f"/v1.0/devices/{device.vendor_device_id}/status", "status")
        if not isinstance(codes, list):
            raise VendorError(ErrorKind.UNKNOWN, "Tuya status returned no data points")
        status = parse_status_codes(codes)
        if status.is_locked is None:
            logger.warning(
                "Tuya device %s reported no lock-state code (available: %s)",
                device.vendor_device_id,
                ", ".join(str(item.get("code")) for item in codes if isinstance(item, dict)),
            )
        return status

    async def lock(self, device: Device, creds: VendorCredentials) -> list[CommandAttempt]:
        return await self._door_command(device, creds, "lock")

    async def unlock(self, device: Device, creds: VendorCredentials) -> list[CommandAttempt]:
        return await self._door_command(device, creds, "unlock")

    async def diagnostics(self, device: Device, creds: VendorCredentials) -> dict[str, Any]:
        device_path = f"/v1.0/devices/{device.vendor_device_id}"
        info = await self._get(creds, device_path, "device info")
        status_codes = await self._get(creds, f"{device_path}/status", "status")

        # Specifications are optional; older devices do not publish them
        try:
            specs = await self._get(creds, f"{device_path}/specifications", "specifications")
        except VendorError as e:
            if e.kind in (ErrorKind.SUBSCRIPTION_EXPIRED, ErrorKind.AUTH_FAILED):
                raise
            logger.warning("Tuya specifications unavailable for %s: %s", device.vendor_device_id, e)
            specs = {"error": e.detail}

        functions = specs.get("functions", []) if isinstance(specs, dict) else []
        return {
            "device_info": info,
            "status_codes": status_codes,
            "specifications": specs,
            "available_commands": [
                {"code": f.get("code"), "name": f.get("name"), "type": f.get("type")}
                for f in functions
                if any(word in str(f.get("code", "")) for word in ("lock", "unlock", "remote"))
            ],
            "online": bool(info.get("online")) if isinstance(info, dict) else None,
            "region": (creds.region or self.default_region),
            "checked_at": datetime.utcnow().isoformat(),
        }

    async def provision_key(self, device: Device, creds: VendorCredentials) -> ProvisionedKey:
        key = secrets.token_hex(16)
        candidates = [
            (method, {"code": SET_KEY_COMMAND_CODE, "value": value})
            for method, value in key_setup_values(key)
        ]
        # The values carry the key itself; keep them out of the attempt trail
        attempts = await self._try_commands(device, creds, candidates, "key setup", record_values=False)
        return ProvisionedKey(key=key, attempts=attempts)
