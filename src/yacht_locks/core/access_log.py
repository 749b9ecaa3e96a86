"""Append-only access log of every command attempt."""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from yacht_locks.config import LogAction, location_label
from yacht_locks.db.database import session_scope
from yacht_locks.db.models import AccessLogEntry, Device

logger = logging.getLogger(__name__)

# Actions that say what state a person left the door in
ACTIVITY_ACTIONS = (LogAction.LOCK.value, LogAction.UNLOCK.value, LogAction.MANUAL_CORRECTION.value)


class AccessLog:
    """Writes and reads access log rows. Rows are never edited or deleted."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker

    async def append(
        self,
        device: Device,
        action: LogAction,
        actor_name: str,
        success: bool,
        actor_role: Optional[str] = None,
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
        session: Optional[AsyncSession] = None,
    ) -> AccessLogEntry:
        """Add one row. With ``session`` the row commits along with the caller's other writes."""
        entry = AccessLogEntry(
            timestamp=timestamp or datetime.utcnow(),
            device_id=device.id,
            site_id=device.site_id,
            actor_name=actor_name,
            actor_role=actor_role,
            action=action.value,
            location=location_label(device.location),
            success=success,
            error_kind=error_kind,
            error_message=error_message,
            details=details,
        )
        if session is not None:
            session.add(entry)
            await session.flush()
        else:
            async with session_scope(self._session_maker) as session:
                session.add(entry)
        logger.debug(
            "Access log: %s %s %s success=%s", actor_name, action.value, device.id, success
        )
        return entry

    async def for_device(
        self,
        device_id: str,
        limit: int = 100,
        offset: int = 0,
        action: Optional[LogAction] = None,
    ) -> list[AccessLogEntry]:
        async with session_scope(self._session_maker) as session:
            query = (
                select(AccessLogEntry)
                .where(AccessLogEntry.device_id == device_id)
                .order_by(AccessLogEntry.timestamp.desc(), AccessLogEntry.id.desc())
            )
            if action is not None:
                query = query.where(AccessLogEntry.action == action.value)
            result = await session.execute(query.offset(offset).limit(limit))
            return list(result.scalars().all())

    async def count(self, device_id: str) -> int:
        async with session_scope(self._session_maker) as session:
            total = await session.scalar(
                select(func.count(AccessLogEntry.id)).where(AccessLogEntry.device_id == device_id)
            )
            return total or 0

    async def last_activity(self, device_id: str) -> Optional[AccessLogEntry]:
        """Most recent successful lock, unlock or manual correction."""
        async with session_scope(self._session_maker) as session:
            result = await session.execute(
                select(AccessLogEntry)
                .where(
                    AccessLogEntry.device_id == device_id,
                    AccessLogEntry.success == True,  # noqa: E712
                    AccessLogEntry.action.in_(ACTIVITY_ACTIONS),
                )
                .order_by(AccessLogEntry.timestamp.desc(), AccessLogEntry.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()


def entry_to_dict(entry: AccessLogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        "device_id": entry.device_id,
        "actor_name": entry.actor_name,
        "actor_role": entry.actor_role,
        "action": entry.action,
        "location": entry.location,
        "success": entry.success,
        "error_kind": entry.error_kind,
        "error_message": entry.error_message,
        "details": entry.details,
    }
