"""Database models for the yacht lock service."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from yacht_locks.config import LockState


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


def _new_device_id() -> str:
    return str(uuid.uuid4())


class Site(Base):
    """A yacht (or any site) whose doors are managed together."""

    __tablename__ = "sites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True)
    name: Mapped[str] = mapped_column(String(100))

    # Relationships
    devices: Mapped[list["Device"]] = relationship("Device", back_populates="site")

    def __repr__(self) -> str:
        return f"<Site {self.code}>"


class CredentialSet(Base):
    """Vendor API identity used on behalf of one site.

    At most one row per (site, vendor) is active; the credential store
    deactivates the previous row when a new one is saved.
    """

    __tablename__ = "credential_sets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id"), index=True)
    vendor: Mapped[str] = mapped_column(String(20))  # tuya, ttlock
    client_id: Mapped[str] = mapped_column(String(255))
    client_secret: Mapped[str] = mapped_column(String(255))
    region: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # Tuya only
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # TTLock only
    password_md5: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # TTLock only
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<CredentialSet site={self.site_id} vendor={self.vendor} active={self.is_active}>"


class Device(Base):
    """A physical door lock."""

    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_device_id)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id"), index=True)
    vendor: Mapped[str] = mapped_column(String(20))  # tuya, ttlock
    vendor_device_id: Mapped[str] = mapped_column(String(100))
    local_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    name: Mapped[str] = mapped_column(String(100))
    location: Mapped[str] = mapped_column(String(50))  # e.g. "front_door"
    manufacturer: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # e.g. "jtmspro"

    # Cached state and telemetry
    current_lock_state: Mapped[str] = mapped_column(String(10), default=LockState.UNKNOWN.value)
    state_source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    state_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    online_status: Mapped[bool] = mapped_column(Boolean, default=False)
    battery_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_status_check: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Lifecycle
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    requires_key_setup: Mapped[bool] = mapped_column(Boolean, default=False)
    encryption_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    encryption_key_set_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    site: Mapped["Site"] = relationship("Site", back_populates="devices")

    __table_args__ = (
        UniqueConstraint("site_id", "vendor", "vendor_device_id", name="uq_device_vendor_id"),
    )

    def __repr__(self) -> str:
        return f"<Device {self.name} ({self.vendor}:{self.vendor_device_id})>"


class Passcode(Base):
    """A keypad code issued on a TTLock lock."""

    __tablename__ = "passcodes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_id: Mapped[str] = mapped_column(ForeignKey("devices.id"), index=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id"))
    passcode: Mapped[str] = mapped_column(String(20))
    name: Mapped[str] = mapped_column(String(100))
    vendor_passcode_id: Mapped[int] = mapped_column(Integer)  # TTLock keyboardPwdId
    starts_at: Mapped[datetime] = mapped_column(DateTime)
    ends_at: Mapped[datetime] = mapped_column(DateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Passcode {self.name} on {self.device_id} active={self.is_active}>"


class AccessLogEntry(Base):
    """One attempted command against a device. Rows are never updated."""

    __tablename__ = "access_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    device_id: Mapped[str] = mapped_column(ForeignKey("devices.id"), index=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id"))
    actor_name: Mapped[str] = mapped_column(String(255))
    actor_role: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    action: Mapped[str] = mapped_column(String(30))  # lock, unlock, status, diagnostics, ...
    location: Mapped[str] = mapped_column(String(100))
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AccessLogEntry {self.timestamp} {self.action} {self.device_id}>"
