"""API routes for the yacht lock service."""

from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from yacht_locks.config import LockAction, LockVendor
from yacht_locks.core.manager import LockService
from yacht_locks.core.orchestrator import Actor
from yacht_locks.core.registry import DeviceHasHistory, DuplicateDevice
from yacht_locks.core.results import CommandResult, ErrorKind

router = APIRouter()

# Dependency to get the service instance
_service: Optional[LockService] = None

# HTTP status for a failed command, by error kind
ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.AUTH_FAILED: 502,
    ErrorKind.SUBSCRIPTION_EXPIRED: 402,
    ErrorKind.DEVICE_OFFLINE: 503,
    ErrorKind.DEVICE_NOT_FOUND: 404,
    ErrorKind.VENDOR_UNAVAILABLE: 504,
    ErrorKind.KEY_SETUP_REQUIRED: 409,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.UNKNOWN: 502,
}


def get_service() -> LockService:
    if _service is None:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return _service


def set_service(service: Optional[LockService]) -> None:
    global _service
    _service = service


def get_actor(
    x_actor_name: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    if not x_actor_name:
        raise HTTPException(status_code=401, detail="X-Actor-Name header is required")
    return Actor(name=x_actor_name, role=x_actor_role)


def command_response(result: CommandResult) -> JSONResponse:
    status_code = 200 if result.success else ERROR_STATUS_CODES.get(result.error_kind, 502)
    return JSONResponse(status_code=status_code, content=result.to_dict())


def utc_naive(moment: datetime) -> datetime:
    """Naive UTC, as every timestamp column is stored."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


# Request models


class SiteRequest(BaseModel):
    code: str
    name: str


class DeviceCreateRequest(BaseModel):
    vendor: LockVendor
    vendor_device_id: str
    name: str
    location: str
    category: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    local_key: Optional[str] = None


class DeviceUpdateRequest(BaseModel):
    name: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    vendor_device_id: Optional[str] = None
    local_key: Optional[str] = None


class CommandRequest(BaseModel):
    action: LockAction


class ManualCorrectionRequest(BaseModel):
    state: Literal["locked", "unlocked"]


class PasscodeRequest(BaseModel):
    passcode: str = Field(pattern=r"^\d{4,9}$")
    name: str = Field(min_length=1, max_length=100)
    start_date: datetime
    end_date: datetime


class CredentialRequest(BaseModel):
    client_id: str
    client_secret: str
    region: Optional[str] = None
    username: Optional[str] = None
    password_md5: Optional[str] = None


# Health


@router.get("/health")
async def health_check(service: LockService = Depends(get_service)):
    """Health check endpoint."""
    return service.health_check()


# Sites and devices


@router.post("/sites")
async def create_site(request: SiteRequest, service: LockService = Depends(get_service)):
    site = await service.registry.ensure_site(request.code, request.name)
    return {"id": site.id, "code": site.code, "name": site.name}


@router.get("/sites/{site_id}/devices")
async def list_devices(
    site_id: int,
    include_inactive: bool = Query(default=False),
    service: LockService = Depends(get_service),
):
    """List the locks of a site."""
    return await service.list_devices(site_id, include_inactive=include_inactive)


@router.post("/sites/{site_id}/devices", status_code=201)
async def register_device(
    site_id: int,
    request: DeviceCreateRequest,
    service: LockService = Depends(get_service),
):
    """Register a lock with a site."""
    if await service.registry.get_site(site_id) is None:
        raise HTTPException(status_code=404, detail="Site not found")
    try:
        return await service.register_device(site_id, **request.model_dump())
    except DuplicateDevice as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/devices/{device_id}")
async def get_device(device_id: str, service: LockService = Depends(get_service)):
    device = await service.get_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.patch("/devices/{device_id}")
async def update_device(
    device_id: str,
    request: DeviceUpdateRequest,
    service: LockService = Depends(get_service),
):
    """Edit a lock's descriptive fields."""
    fields = request.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        device = await service.update_device(device_id, **fields)
    except DuplicateDevice as e:
        raise HTTPException(status_code=409, detail=str(e))
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.post("/devices/{device_id}/deactivate")
async def deactivate_device(device_id: str, service: LockService = Depends(get_service)):
    device = await service.deactivate_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.delete("/devices/{device_id}")
async def delete_device(device_id: str, service: LockService = Depends(get_service)):
    """Delete a lock that has no access history."""
    try:
        deleted = await service.delete_device(device_id)
    except DeviceHasHistory as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail="Device not found")
    return {"success": True}


# Commands


@router.post("/devices/{device_id}/commands")
async def issue_command(
    device_id: str,
    request: CommandRequest,
    actor: Actor = Depends(get_actor),
    service: LockService = Depends(get_service),
):
    """Lock, unlock, read status, run diagnostics or provision a key."""
    return command_response(await service.issue_command(device_id, request.action, actor))


@router.post("/devices/{device_id}/refresh")
async def refresh_device(
    device_id: str,
    actor: Actor = Depends(get_actor),
    service: LockService = Depends(get_service),
):
    return command_response(await service.refresh_status(device_id, actor))


@router.post("/devices/{device_id}/manual-correction")
async def manual_correction(
    device_id: str,
    request: ManualCorrectionRequest,
    actor: Actor = Depends(get_actor),
    service: LockService = Depends(get_service),
):
    """Record the lock state a crew member has seen on the door."""
    return command_response(await service.manual_correction(device_id, request.state, actor))


@router.post("/devices/{device_id}/provision-key")
async def provision_key(
    device_id: str,
    actor: Actor = Depends(get_actor),
    service: LockService = Depends(get_service),
):
    return command_response(await service.provision_key(device_id, actor))


# Passcodes


@router.get("/devices/{device_id}/passcodes")
async def list_passcodes(
    device_id: str,
    include_inactive: bool = Query(default=False),
    service: LockService = Depends(get_service),
):
    return await service.list_passcodes(device_id, include_inactive=include_inactive)


@router.post("/devices/{device_id}/passcodes")
async def create_passcode(
    device_id: str,
    request: PasscodeRequest,
    actor: Actor = Depends(get_actor),
    service: LockService = Depends(get_service),
):
    """Issue a keypad code on a TTLock lock for a time window."""
    result = await service.create_passcode(
        device_id,
        request.passcode,
        request.name,
        utc_naive(request.start_date),
        utc_naive(request.end_date),
        actor,
    )
    return command_response(result)


@router.delete("/devices/{device_id}/passcodes/{passcode_id}")
async def delete_passcode(
    device_id: str,
    passcode_id: int,
    actor: Actor = Depends(get_actor),
    service: LockService = Depends(get_service),
):
    return command_response(await service.delete_passcode(device_id, passcode_id, actor))


@router.post("/sites/{site_id}/refresh")
async def refresh_site(
    site_id: int,
    actor: Actor = Depends(get_actor),
    service: LockService = Depends(get_service),
):
    """Refresh the status of every active lock on a site."""
    report = await service.refresh_site(site_id, actor)
    return report.to_dict()


# Access log


@router.get("/devices/{device_id}/access-log")
async def access_log(
    device_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: LockService = Depends(get_service),
):
    return await service.access_history(device_id, limit=limit, offset=offset)


@router.get("/devices/{device_id}/last-activity")
async def last_activity(device_id: str, service: LockService = Depends(get_service)):
    return {"last_activity": await service.last_activity(device_id)}


# Credentials and alerts


@router.put("/sites/{site_id}/credentials/{vendor}")
async def update_credentials(
    site_id: int,
    vendor: LockVendor,
    request: CredentialRequest,
    service: LockService = Depends(get_service),
):
    """Replace the active vendor credentials of a site."""
    if await service.registry.get_site(site_id) is None:
        raise HTTPException(status_code=404, detail="Site not found")
    if vendor is LockVendor.TTLOCK and not (request.username and request.password_md5):
        raise HTTPException(status_code=400, detail="TTLock credentials need username and password_md5")
    return await service.update_credentials(site_id, vendor, **request.model_dump())


@router.get("/alerts")
async def list_alerts(
    site_id: Optional[int] = Query(default=None),
    service: LockService = Depends(get_service),
):
    return service.active_alerts(site_id)
