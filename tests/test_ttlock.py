from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from yacht_locks.core.results import ErrorKind, VendorError
from yacht_locks.db.models import Device
from yacht_locks.vendors.base import VendorCredentials
from yacht_locks.vendors.ttlock import TTLockAdapter

CREDS = VendorCredentials(
    credential_id=7,
    site_id=1,
    vendor="ttlock",
    client_id="tt-client",
    client_secret="tt-secret",
    username="crew@pequod.example",
    password_md5="5f4dcc3b5aa765d61d8327deb882cf99",
)

DEVICE = Device(
    id="dev-2",
    site_id=1,
    vendor="ttlock",
    vendor_device_id="4455",
    name="Crew door",
    location="crew_quarters",
)


class TTLockCloud:
    def __init__(self, routes=None, token=None, token_status=200):
        self.routes = routes or {}
        self.token_status = token_status
        self.token = token or {"access_token": "tt-tok", "expires_in": 7200, "uid": 99}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth2/token":
            return httpx.Response(self.token_status, json=self.token)
        body = self.routes[path]
        if isinstance(body, list):
            body = body.pop(0)
        return httpx.Response(200, json=body)

    def token_requests(self):
        return [r for r in self.requests if r.url.path == "/oauth2/token"]

    def form(self, path):
        request = next(r for r in self.requests if r.url.path == path)
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def _adapter(cloud) -> TTLockAdapter:
    return TTLockAdapter(client=httpx.AsyncClient(transport=httpx.MockTransport(cloud)))


@pytest.mark.asyncio
async def test_status_through_gateway():
    cloud = TTLockCloud({
        "/v3/lock/detail": {"lockId": 4455, "electricQuantity": 72, "hasGateway": 1},
        "/v3/lock/queryOpenState": {"state": 0},
    })
    adapter = _adapter(cloud)

    status = await adapter.status(DEVICE, CREDS)

    assert status.is_locked is True
    assert status.online is True
    assert status.battery_level == 72

    token_form = cloud.form("/oauth2/token")
    assert token_form["grant_type"] == "password"
    assert token_form["password"] == CREDS.password_md5

    detail_request = next(r for r in cloud.requests if r.url.path == "/v3/lock/detail")
    assert detail_request.url.params["lockId"] == "4455"
    assert detail_request.url.params["accessToken"] == "tt-tok"


@pytest.mark.asyncio
async def test_status_without_gateway_has_no_lock_state():
    cloud = TTLockCloud({"/v3/lock/detail": {"electricQuantity": 30, "hasGateway": 0}})
    adapter = _adapter(cloud)

    status = await adapter.status(DEVICE, CREDS)

    assert status.is_locked is None
    assert status.online is False
    assert status.battery_level == 30
    assert all(r.url.path != "/v3/lock/queryOpenState" for r in cloud.requests)


@pytest.mark.asyncio
async def test_unlock_posts_form():
    cloud = TTLockCloud({"/v3/lock/unlock": {"errcode": 0, "errmsg": "none error message"}})
    adapter = _adapter(cloud)

    attempts = await adapter.unlock(DEVICE, CREDS)

    form = cloud.form("/v3/lock/unlock")
    assert form["lockId"] == "4455"
    assert form["clientId"] == "tt-client"
    assert [(a.method, a.accepted) for a in attempts] == [("/v3/lock/unlock", True)]
    assert attempts[0].response["errmsg"] == "none error message"


@pytest.mark.asyncio
async def test_gateway_offline_is_device_offline():
    cloud = TTLockCloud({"/v3/lock/lock": {"errcode": -3002, "errmsg": "The gateway is offline"}})
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.lock(DEVICE, CREDS)

    assert exc.value.kind is ErrorKind.DEVICE_OFFLINE


@pytest.mark.asyncio
async def test_subscription_message_is_subscription_expired():
    cloud = TTLockCloud({
        "/v3/lock/unlock": {"errcode": 80000, "errmsg": "Please renew your subscription"},
    })
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.unlock(DEVICE, CREDS)

    assert exc.value.kind is ErrorKind.SUBSCRIPTION_EXPIRED


@pytest.mark.asyncio
async def test_invalid_token_is_refreshed_once():
    cloud = TTLockCloud({
        "/v3/lock/lock": [
            {"errcode": 10003, "errmsg": "invalid token"},
            {"errcode": 0},
        ],
    })
    adapter = _adapter(cloud)

    await adapter.lock(DEVICE, CREDS)

    assert len(cloud.token_requests()) == 2


@pytest.mark.asyncio
async def test_rejected_login_is_auth_failure():
    cloud = TTLockCloud(token={"errcode": 10007, "errmsg": "invalid account or invalid password"})
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.status(DEVICE, CREDS)

    assert exc.value.kind is ErrorKind.AUTH_FAILED


@pytest.mark.asyncio
async def test_missing_username_fails_without_network():
    cloud = TTLockCloud()
    adapter = _adapter(cloud)
    creds = VendorCredentials(
        credential_id=8, site_id=1, vendor="ttlock", client_id="tt-client", client_secret="tt-secret"
    )

    with pytest.raises(VendorError) as exc:
        await adapter.unlock(DEVICE, creds)

    assert exc.value.kind is ErrorKind.AUTH_FAILED
    assert cloud.requests == []


@pytest.mark.asyncio
async def test_diagnostics_lists_passcodes():
    cloud = TTLockCloud({
        "/v3/lock/detail": {"lockId": 4455, "hasGateway": 1, "electricQuantity": 88},
        "/v3/lock/queryOpenState": {"errcode": -2012, "errmsg": "no gateway"},
        "/v3/lock/listKeyboardPwd": {"list": [{"keyboardPwdId": 1, "keyboardPwdName": "Crew"}]},
    })
    adapter = _adapter(cloud)

    report = await adapter.diagnostics(DEVICE, CREDS)

    assert report["has_gateway"] is True
    assert report["passcodes"] == [{"keyboardPwdId": 1, "keyboardPwdName": "Crew"}]
    assert "error" in report["open_state"]


@pytest.mark.asyncio
async def test_provision_key_is_not_supported():
    adapter = _adapter(TTLockCloud())

    with pytest.raises(VendorError) as exc:
        await adapter.provision_key(DEVICE, CREDS)

    assert exc.value.kind is ErrorKind.UNKNOWN


@pytest.mark.asyncio
async def test_token_endpoint_not_found_is_auth_failure():
    cloud = TTLockCloud(token={"error": "not found"}, token_status=404)
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.lock(DEVICE, CREDS)

    assert exc.value.kind is ErrorKind.AUTH_FAILED
    assert len(cloud.requests) == 1


@pytest.mark.asyncio
async def test_create_passcode_posts_validity_window():
    cloud = TTLockCloud({"/v3/keyboardPwd/add": {"keyboardPwdId": 31337}})
    adapter = _adapter(cloud)
    starts = datetime(2026, 7, 1, 15, 0)
    ends = datetime(2026, 7, 8, 11, 0, tzinfo=timezone.utc)

    passcode_id = await adapter.create_passcode(DEVICE, CREDS, "482913", "Charter guest", starts, ends)

    assert passcode_id == 31337
    form = cloud.form("/v3/keyboardPwd/add")
    assert form["lockId"] == "4455"
    assert form["keyboardPwd"] == "482913"
    assert form["keyboardPwdName"] == "Charter guest"
    assert form["addType"] == "2"
    assert form["startDate"] == str(int(starts.replace(tzinfo=timezone.utc).timestamp() * 1000))
    assert form["endDate"] == str(int(ends.timestamp() * 1000))


@pytest.mark.asyncio
async def test_create_passcode_without_id_is_an_error():
    cloud = TTLockCloud({"/v3/keyboardPwd/add": {"errcode": 0}})
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.create_passcode(
            DEVICE, CREDS, "482913", "Charter guest", datetime(2026, 7, 1), datetime(2026, 7, 8)
        )

    assert exc.value.kind is ErrorKind.UNKNOWN


@pytest.mark.asyncio
async def test_delete_passcode_posts_gateway_delete():
    cloud = TTLockCloud({"/v3/keyboardPwd/delete": {"errcode": 0, "errmsg": "none error message"}})
    adapter = _adapter(cloud)

    await adapter.delete_passcode(DEVICE, CREDS, 31337)

    form = cloud.form("/v3/keyboardPwd/delete")
    assert form["keyboardPwdId"] == "31337"
    assert form["deleteType"] == "2"
    assert form["lockId"] == "4455"


@pytest.mark.asyncio
async def test_passcode_rejected_by_lock_is_raised():
    cloud = TTLockCloud({"/v3/keyboardPwd/add": {"errcode": -3036, "errmsg": "The lock is offline"}})
    adapter = _adapter(cloud)

    with pytest.raises(VendorError) as exc:
        await adapter.create_passcode(
            DEVICE, CREDS, "482913", "Charter guest", datetime(2026, 7, 1), datetime(2026, 7, 8)
        )

    assert exc.value.kind is ErrorKind.DEVICE_OFFLINE
