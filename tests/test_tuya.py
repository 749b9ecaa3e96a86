import base64
import hashlib
import hmac
import json
from datetime import datetime

import httpx
import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from yacht_locks.core.results import ErrorKind, VendorError
from yacht_locks.db.models import Device
from yacht_locks.vendors.base import VendorCredentials
from yacht_locks.vendors.tuya import TuyaAdapter, encrypt_door_payload, parse_status_codes

CREDS = VendorCredentials(
    credential_id=1, site_id=1, vendor="tuya", client_id="tuya-client", client_secret="s3cret", region="eu"
)


def _device(category="ms", encryption_key=None):
    return Device(
        id="dev-1",
        site_id=1,
        vendor="tuya",
        vendor_device_id="bf1234",
        name="Saloon door",
        location="front_door",
        category=category,
        encryption_key=encryption_key,
    )


def _ok(result=None):
    return httpx.Response(200, json={"success": True, "result": result})


def _fail(code, msg="error"):
    return httpx.Response(200, json={"success": False, "code": code, "msg": msg})


TOKEN = _ok({"access_token": "tok-1", "expire_time": 7200, "uid": "u1"})


def _copy(response: httpx.Response) -> httpx.Response:
    return httpx.Response(response.status_code, content=response.content, headers=response.headers)


def _decrypt(key_hex: str, value: str) -> bytes:
    decryptor = Cipher(algorithms.AES(bytes.fromhex(key_hex)), modes.CBC(bytes(16))).decryptor()
    padded = decryptor.update(base64.b64decode(value)) + decryptor.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


class TuyaCloud:
    """Scripted Tuya endpoint: token requests always succeed unless overridden."""

    def __init__(self, responses=None, token=None):
        self.responses = responses or {}
        self.token = token
        self.requests: list[httpx.Request] = []
        self.commands: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1.0/token":
            return _copy(self.token or TOKEN)
        if path.endswith("/commands"):
            self.commands.extend(json.loads(request.content)["commands"])
        queue = self.responses[(request.method, path)]
        if isinstance(queue, list):
            return queue.pop(0)
        return _copy(queue)

    def token_requests(self):
        return [r for r in self.requests if r.url.path == "/v1.0/token"]


def _adapter(cloud) -> TuyaAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(cloud))
    return TuyaAdapter(client=client)


@pytest.mark.asyncio
async def test_status_reads_lock_state_and_battery():
    cloud = TuyaCloud({
        ("GET", "/v1.0/devices/bf1234/status"): _ok([
            {"code": "lock_motor_state", "value": False},
            {"code": "residual_electricity", "value": 57},
        ]),
    })
    adapter = _adapter(cloud)

    status = await adapter.status(_device(), CREDS)

    assert status.is_locked is False
    assert status.battery_level == 57
    assert status.online is True
    assert cloud.requests[0].url.host == "openapi.tuyaeu.com"


@pytest.mark.asyncio
async def test_requests_are_signed():
    cloud = TuyaCloud({("GET", "/v1.0/devices/bf1234/status"): _ok([])})
    adapter = _adapter(cloud)

    await adapter.status(_device(), CREDS)

    status_request = cloud.requests[-1]
    headers = status_request.headers
    assert headers["client_id"] == "tuya-client"
    assert headers["access_token"] == "tok-1"
    assert headers["sign_method"] == "HMAC-SHA256"

    string_to_sign = "\n".join(["GET", hashlib.sha256(b"").hexdigest(), "", "/v1.0/devices/bf1234/status"])
    expected = hmac.new(
        b"s3cret", ("tuya-client" + "tok-1" + headers["t"] + string_to_sign).encode(), hashlib.sha256
    ).hexdigest().upper()
    assert headers["sign"] == expected


@pytest.mark.asyncio
async def test_token_is_cached_per_credential_set():
    cloud = TuyaCloud({("GET", "/v1.0/devices/bf1234/status"): _ok([])})
    adapter = _adapter(cloud)

    await adapter.status(_device(), CREDS)
    await adapter.status(_device(), CREDS)

    assert len(cloud.token_requests()) == 1

    adapter.invalidate(CREDS.credential_id)
    await adapter.status(_device(), CREDS)
    assert len(cloud.token_requests()) == 2


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_once():
    cloud = TuyaCloud({
        ("GET", "/v1.0/devices/bf1234/status"): [_fail(1010, "token invalid"), _ok([])],
    })
    adapter = _adapter(cloud)

    status = await adapter.status(_device(), CREDS)

    assert status.is_locked is None
    assert len(cloud.token_requests()) == 2


@pytest.mark.asyncio
async def test_subscription_expired_during_authentication():
    cloud = TuyaCloud(token=_fail(28841002, "No permissions. Your subscription to cloud development plan has expired."))
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.unlock(_device(), CREDS)

    assert exc.value.kind is ErrorKind.SUBSCRIPTION_EXPIRED


@pytest.mark.asyncio
async def test_bad_client_secret_is_auth_failure():
    cloud = TuyaCloud(token=_fail(1004, "sign invalid"))
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.status(_device(), CREDS)

    assert exc.value.kind is ErrorKind.AUTH_FAILED


@pytest.mark.asyncio
async def test_unlock_falls_through_unsupported_commands():
    cloud = TuyaCloud({
        ("POST", "/v1.0/devices/bf1234/commands"): [
            _fail(2008, "command or value not support"),
            _ok(True),
        ],
    })
    adapter = _adapter(cloud)

    await adapter.unlock(_device(), CREDS)

    assert [c["code"] for c in cloud.commands] == ["remote_no_dp_key", "unlock_app"]


@pytest.mark.asyncio
async def test_offline_device_stops_command_attempts():
    cloud = TuyaCloud({("POST", "/v1.0/devices/bf1234/commands"): _fail(2001, "device is offline")})
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.lock(_device(), CREDS)

    assert exc.value.kind is ErrorKind.DEVICE_OFFLINE
    assert len(cloud.commands) == 1


@pytest.mark.asyncio
async def test_all_unlock_methods_rejected():
    cloud = TuyaCloud({("POST", "/v1.0/devices/bf1234/commands"): _fail(2008, "not support")})
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.unlock(_device(), CREDS)

    assert exc.value.kind is ErrorKind.UNKNOWN
    assert "All unlock methods failed" in exc.value.detail


@pytest.mark.asyncio
async def test_server_error_is_vendor_unavailable():
    cloud = TuyaCloud({("GET", "/v1.0/devices/bf1234/status"): httpx.Response(503)})
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.status(_device(), CREDS)

    assert exc.value.kind is ErrorKind.VENDOR_UNAVAILABLE


@pytest.mark.asyncio
async def test_network_timeout_is_vendor_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    adapter = TuyaAdapter(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(VendorError) as exc:
        await adapter.status(_device(), CREDS)

    assert exc.value.kind is ErrorKind.VENDOR_UNAVAILABLE


@pytest.mark.asyncio
async def test_unlock_returns_every_attempt():
    cloud = TuyaCloud({
        ("POST", "/v1.0/devices/bf1234/commands"): [
            _fail(2008, "command or value not support"),
            _fail(2008, "command or value not support"),
            _ok(True),
        ],
    })
    adapter = _adapter(cloud)

    attempts = await adapter.unlock(_device(), CREDS)

    assert [(a.attempt, a.code, a.accepted) for a in attempts] == [
        (1, "remote_no_dp_key", False),
        (2, "unlock_app", False),
        (3, "unlock", True),
    ]
    assert attempts[0].response["code"] == 2008
    assert attempts[1].value is True


@pytest.mark.asyncio
async def test_rejected_attempts_travel_with_the_error():
    cloud = TuyaCloud({
        ("POST", "/v1.0/devices/bf1234/commands"): [_fail(2008, "not support"), _fail(2001, "device is offline")],
    })
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.lock(_device(), CREDS)

    assert exc.value.kind is ErrorKind.DEVICE_OFFLINE
    assert [a.code for a in exc.value.attempts] == ["remote_no_dp_key", "lock_app"]


@pytest.mark.asyncio
async def test_key_category_sends_aes_encrypted_command():
    key = "00112233445566778899aabbccddeeff"
    cloud = TuyaCloud({("POST", "/v1.0/devices/bf1234/commands"): _ok(True)})
    adapter = _adapter(cloud)

    attempts = await adapter.unlock(_device(category="jtmspro", encryption_key=key), CREDS)

    assert len(cloud.commands) == 1
    command = cloud.commands[0]
    assert command["code"] == "remote_no_dp_key"
    payload = json.loads(_decrypt(key, command["value"]))
    assert payload["action"] == "unlock"
    assert isinstance(payload["timestamp"], int)
    assert attempts[0].method == "AES-128-CBC with JSON payload"


@pytest.mark.asyncio
async def test_key_category_falls_back_to_plainer_values():
    key = "00112233445566778899aabbccddeeff"
    cloud = TuyaCloud({
        ("POST", "/v1.0/devices/bf1234/commands"): [
            _fail(2008, "param is illegal"),
            _fail(2008, "param is illegal"),
            _fail(2008, "param is illegal"),
            _fail(2008, "param is illegal"),
            _fail(2008, "param is illegal"),
            _ok(True),
        ],
    })
    adapter = _adapter(cloud)

    attempts = await adapter.lock(_device(category="jtmspro", encryption_key=key), CREDS)

    values = [c["value"] for c in cloud.commands]
    assert values[1:5] == ["lock", True, "true", base64.b64encode(b"lock").decode()]
    assert _decrypt(key, values[5]) == b"lock"
    assert {c["code"] for c in cloud.commands} == {"remote_no_dp_key"}
    assert attempts[-1].method == 'AES-128-CBC with simple "lock" string'
    assert attempts[-1].accepted is True


@pytest.mark.asyncio
async def test_key_category_reports_all_secure_methods_failed():
    key = "00112233445566778899aabbccddeeff"
    cloud = TuyaCloud({("POST", "/v1.0/devices/bf1234/commands"): _fail(2008, "param is illegal")})
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.unlock(_device(category="jtmspro", encryption_key=key), CREDS)

    assert exc.value.kind is ErrorKind.UNKNOWN
    assert len(exc.value.attempts) == 7
    assert cloud.commands[-1]["value"] == b"unlock".hex()


@pytest.mark.asyncio
async def test_provision_key_walks_key_encodings():
    cloud = TuyaCloud({
        ("POST", "/v1.0/devices/bf1234/commands"): [
            _fail(2008, "not support"),
            _fail(2008, "not support"),
            _fail(2008, "not support"),
            _ok(True),
        ],
    })
    adapter = _adapter(cloud)

    provisioned = await adapter.provision_key(_device(category="jtmspro"), CREDS)

    key = provisioned.key
    assert len(key) == 32
    assert {c["code"] for c in cloud.commands} == {"remote_no_pd_setkey"}
    values = [c["value"] for c in cloud.commands]
    assert json.loads(base64.b64decode(values[0]))["key"] == key
    assert values[1] == key
    assert base64.b64decode(values[2]) == bytes.fromhex(key)
    assert values[3] == key.upper()

    assert [a.method for a in provisioned.attempts] == [
        "JSON + base64", "Raw hex key", "Raw base64 key", "Simple key string",
    ]
    assert all(a.value is None for a in provisioned.attempts)


@pytest.mark.asyncio
async def test_token_endpoint_not_found_is_auth_failure():
    cloud = TuyaCloud(token=httpx.Response(404, text="not found"))
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.status(_device(), CREDS)

    assert exc.value.kind is ErrorKind.AUTH_FAILED


@pytest.mark.asyncio
async def test_token_endpoint_outage_stays_vendor_unavailable():
    cloud = TuyaCloud(token=httpx.Response(503))
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.status(_device(), CREDS)

    assert exc.value.kind is ErrorKind.VENDOR_UNAVAILABLE


@pytest.mark.asyncio
async def test_default_region_is_case_insensitive():
    cloud = TuyaCloud({("GET", "/v1.0/devices/bf1234/status"): _ok([])})
    adapter = TuyaAdapter(client=httpx.AsyncClient(transport=httpx.MockTransport(cloud)), default_region="EU")
    creds = VendorCredentials(
        credential_id=2, site_id=1, vendor="tuya", client_id="tuya-client", client_secret="s3cret"
    )

    await adapter.status(_device(), creds)

    assert {r.url.host for r in cloud.requests} == {"openapi.tuyaeu.com"}


@pytest.mark.asyncio
async def test_passcodes_are_not_supported():
    cloud = TuyaCloud()
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.create_passcode(
            _device(), CREDS, "123456", "Guest", datetime(2026, 6, 1), datetime(2026, 6, 8)
        )

    assert exc.value.kind is ErrorKind.UNKNOWN
    assert cloud.requests == []


@pytest.mark.asyncio
async def test_diagnostics_tolerates_missing_specifications():
    cloud = TuyaCloud({
        ("GET", "/v1.0/devices/bf1234"): _ok({"id": "bf1234", "online": True, "category": "ms"}),
        ("GET", "/v1.0/devices/bf1234/status"): _ok([{"code": "lock_motor_state", "value": True}]),
        ("GET", "/v1.0/devices/bf1234/specifications"): _fail(2009, "device not exist"),
    })
    adapter = _adapter(cloud)

    report = await adapter.diagnostics(_device(), CREDS)

    assert report["online"] is True
    assert report["region"] == "eu"
    assert report["available_commands"] == []
    assert "error" in report["specifications"]


def test_parse_status_codes_battery_state_fallback():
    status = parse_status_codes([
        {"code": "doorlock_state", "value": "locked"},
        {"code": "battery_state", "value": "low"},
    ])

    assert status.is_locked is True
    assert status.battery_level == 10


def test_parse_status_codes_without_lock_code():
    status = parse_status_codes([{"code": "alarm_lock", "value": "wrong_finger"}])

    assert status.is_locked is None
    assert status.battery_level is None


def test_door_payload_is_encrypted_with_the_provisioned_key():
    key = "ffeeddccbbaa99887766554433221100"
    plaintext = '{"action":"lock","timestamp":1700000000000}'

    value = encrypt_door_payload(key, plaintext)

    assert b"lock" not in base64.b64decode(value)
    assert len(base64.b64decode(value)) % 16 == 0
    assert _decrypt(key, value) == plaintext.encode()
    # Zero IV: the same input under the same key always encrypts the same way
    assert encrypt_door_payload(key, plaintext) == value
