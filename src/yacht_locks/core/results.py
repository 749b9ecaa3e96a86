"""Normalized command outcomes and the error taxonomy shared by all vendors."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from yacht_locks.config import LockAction, LockState


class ErrorKind(str, Enum):
    """Why a command failed.

    Vendor adapters produce all of these except KEY_SETUP_REQUIRED and
    PERMISSION_DENIED, which the orchestrator raises before any network call.
    """

    AUTH_FAILED = "AUTH_FAILED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    DEVICE_OFFLINE = "DEVICE_OFFLINE"
    DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
    VENDOR_UNAVAILABLE = "VENDOR_UNAVAILABLE"
    KEY_SETUP_REQUIRED = "KEY_SETUP_REQUIRED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    UNKNOWN = "UNKNOWN"


# Shown to people instead of raw vendor text
REMEDIATION_HINTS: dict[ErrorKind, str] = {
    ErrorKind.AUTH_FAILED: "The lock platform rejected the stored API credentials. Check the site's credential settings.",
    ErrorKind.SUBSCRIPTION_EXPIRED: "The lock platform account has expired. Renew the cloud subscription; every lock on this account is affected.",
    ErrorKind.DEVICE_OFFLINE: "The lock is offline. Check its batteries and Wi-Fi/gateway connection.",
    ErrorKind.DEVICE_NOT_FOUND: "The lock could not be found. It may have been removed or deactivated.",
    ErrorKind.VENDOR_UNAVAILABLE: "The lock platform did not respond. Try again in a moment.",
    ErrorKind.KEY_SETUP_REQUIRED: "This lock needs its secure key set up before it can be locked or unlocked remotely.",
    ErrorKind.PERMISSION_DENIED: "Only staff can perform this action.",
    ErrorKind.UNKNOWN: "The lock platform returned an unexpected error. Run diagnostics for details.",
}


@dataclass
class CommandAttempt:
    """One payload sent to the vendor while looking for a form the lock accepts."""

    attempt: int
    method: str
    code: str
    accepted: bool
    value: Any = None
    response: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "method": self.method,
            "code": self.code,
            "accepted": self.accepted,
            "value": self.value,
            "response": self.response,
        }


class VendorError(Exception):
    """A vendor call failed; ``kind`` says how.

    ``attempts`` carries the payloads tried before giving up, when the
    adapter walked through several.
    """

    def __init__(
        self,
        kind: ErrorKind,
        detail: str,
        attempts: Optional[list[CommandAttempt]] = None,
    ):
        super().__init__(detail)
        self.kind = kind
        self.detail = detail
        self.attempts = attempts or []

    def __repr__(self) -> str:
        return f"VendorError({self.kind.value}, {self.detail!r})"


@dataclass
class LockStatus:
    """Normalized status read. ``is_locked`` is None when the lock did not say."""

    is_locked: Optional[bool]
    online: Optional[bool] = None
    battery_level: Optional[int] = None
    raw: Any = None

    @property
    def lock_state(self) -> LockState:
        if self.is_locked is None:
            return LockState.UNKNOWN
        return LockState.LOCKED if self.is_locked else LockState.UNLOCKED


@dataclass
class ProvisionedKey:
    """Key material a lock accepted, and how it was delivered."""

    key: str
    attempts: list[CommandAttempt] = field(default_factory=list)


@dataclass
class CommandResult:
    """Outcome of one command, returned to the caller."""

    success: bool
    action: str
    device_id: str
    lock_state: Optional[LockState] = None
    tentative: bool = False
    status: Optional[LockStatus] = None
    diagnostics: Optional[dict[str, Any]] = None
    passcode: Optional[dict[str, Any]] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None

    @classmethod
    def failed(
        cls, action: LockAction | str, device_id: str, kind: ErrorKind, detail: str
    ) -> "CommandResult":
        return cls(
            success=False,
            action=str(getattr(action, "value", action)),
            device_id=device_id,
            error_kind=kind,
            error_detail=detail or kind.value,
        )

    @property
    def hint(self) -> Optional[str]:
        if self.error_kind is None:
            return None
        return REMEDIATION_HINTS.get(self.error_kind)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "action": self.action,
            "device_id": self.device_id,
            "lock_state": self.lock_state.value if self.lock_state else None,
            "tentative": self.tentative,
        }
        if self.status is not None:
            data["status"] = {
                "is_locked": self.status.is_locked,
                "online": self.status.online,
                "battery_level": self.status.battery_level,
            }
        if self.diagnostics is not None:
            data["diagnostics"] = self.diagnostics
        if self.passcode is not None:
            data["passcode"] = self.passcode
        if not self.success:
            data["error_kind"] = self.error_kind.value if self.error_kind else None
            data["error"] = self.error_detail
            data["hint"] = self.hint
        return data


@dataclass
class SweepReport:
    """Outcome of refreshing every active device of a site."""

    site_id: int
    total: int = 0
    refreshed: list[str] = field(default_factory=list)
    failures: dict[str, ErrorKind] = field(default_factory=dict)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "total": self.total,
            "refreshed": len(self.refreshed),
            "failed": self.failed,
            "failures": {device_id: kind.value for device_id, kind in self.failures.items()},
        }
