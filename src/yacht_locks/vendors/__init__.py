"""Vendor adapters, looked up by ``LockVendor``."""

from typing import Optional

from yacht_locks.config import LockVendor, Settings
from yacht_locks.vendors.base import LockAdapter, TokenCache, VendorCredentials
from yacht_locks.vendors.tuya import TuyaAdapter
from yacht_locks.vendors.ttlock import TTLockAdapter


def build_adapters(settings: Optional[Settings] = None) -> dict[LockVendor, LockAdapter]:
    """Create one adapter per supported vendor."""
    timeout = settings.adapter_timeout_seconds if settings else 12.0
    margin = settings.token_expiry_margin_seconds if settings else 60
    return {
        LockVendor.TUYA: TuyaAdapter(
            timeout=timeout,
            token_margin_seconds=margin,
            default_region=settings.tuya_default_region if settings else "us",
        ),
        LockVendor.TTLOCK: TTLockAdapter(
            timeout=timeout,
            token_margin_seconds=margin,
            base_url=settings.ttlock_base_url if settings else "https://euopen.ttlock.com",
        ),
    }


__all__ = [
    "LockAdapter",
    "TokenCache",
    "TTLockAdapter",
    "TuyaAdapter",
    "VendorCredentials",
    "build_adapters",
]
