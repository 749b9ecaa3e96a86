"""Configuration for the yacht lock service."""

from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict


class LockVendor(str, Enum):
    """Cloud platform a lock is registered with."""

    TUYA = "tuya"
    TTLOCK = "ttlock"


class LockAction(str, Enum):
    """Command a caller can issue against a device."""

    LOCK = "lock"
    UNLOCK = "unlock"
    STATUS = "status"
    DIAGNOSTICS = "diagnostics"
    PROVISION_KEY = "provision_key"


class LogAction(str, Enum):
    """Action recorded on an access log row."""

    LOCK = "lock"
    UNLOCK = "unlock"
    STATUS = "status"
    DIAGNOSTICS = "diagnostics"
    MANUAL_CORRECTION = "manual_correction"
    PROVISION_KEY = "provision_key"
    CREATE_PASSCODE = "create_passcode"
    DELETE_PASSCODE = "delete_passcode"


class LockState(str, Enum):
    """Cached physical state of a lock."""

    LOCKED = "locked"
    UNLOCKED = "unlocked"
    UNKNOWN = "unknown"


class StateSource(str, Enum):
    """Where the cached lock state came from."""

    DEVICE = "device"  # confirmed by a status read
    OPTIMISTIC = "optimistic"  # set after the cloud accepted a command
    MANUAL = "manual"  # asserted by a person


# Door locations offered by the device form. Other values are accepted.
DOOR_LOCATIONS: dict[str, str] = {
    "front_door": "Front Door",
    "rear_door": "Rear Door",
    "side_door": "Side Door",
    "cabin_door": "Cabin Door",
}

# Device categories that need a one-time key exchange before lock/unlock
KEY_SETUP_CATEGORIES: dict[LockVendor, frozenset[str]] = {
    LockVendor.TUYA: frozenset({"jtmspro"}),
    LockVendor.TTLOCK: frozenset(),
}

# Roles allowed to provision keys, manage passcodes and correct lock state by hand
STAFF_ROLES = frozenset({"manager", "staff", "mechanic", "master"})

LOW_BATTERY_THRESHOLD = 20

TUYA_REGION_URLS: dict[str, str] = {
    "us": "https://openapi.tuyaus.com",
    "eu": "https://openapi.tuyaeu.com",
    "cn": "https://openapi.tuyacn.com",
    "in": "https://openapi.tuyain.com",
}


def requires_key_setup(vendor: LockVendor | str, category: str | None) -> bool:
    """Whether devices of this vendor/category must be provisioned first."""
    if not category:
        return False
    return category in KEY_SETUP_CATEGORIES.get(LockVendor(vendor), frozenset())


def location_label(location: str | None) -> str:
    """Human-readable label for a location tag (e.g. "front_door")."""
    if not location:
        return "Unknown location"
    return DOOR_LOCATIONS.get(location, location.replace("_", " ").title())


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="YACHT_LOCKS_",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./yacht_locks.db"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8099
    debug: bool = False

    # Every vendor round trip is cut off after this many seconds
    adapter_timeout_seconds: float = 12.0

    # Delay before re-reading status after an accepted lock/unlock
    recheck_delay_seconds: int = 2

    # Background status sweep of every site (0 disables it)
    status_poll_interval_seconds: int = 0

    # Devices refreshed in parallel during a site sweep
    refresh_concurrency: int = 6

    # Ceiling on vendor calls per credential set
    vendor_rate_limit_requests: int = 10
    vendor_rate_limit_window_seconds: float = 1.0

    # Cached vendor tokens are dropped this long before they expire
    token_expiry_margin_seconds: int = 60

    # Vendor endpoints
    tuya_default_region: str = "us"
    ttlock_base_url: str = "https://euopen.ttlock.com"


# Global settings instance
settings = Settings()
