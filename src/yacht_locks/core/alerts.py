"""Account-level alerts shown once per site instead of once per device."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionAlert:
    site_id: int
    vendor: str
    detail: str
    raised_at: datetime
    last_seen_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "vendor": self.vendor,
            "detail": self.detail,
            "raised_at": self.raised_at.isoformat(),
            "last_seen_at": self.last_seen_at.isoformat(),
        }


class SubscriptionAlerts:
    """Tracks vendor accounts whose cloud subscription has lapsed."""

    def __init__(self) -> None:
        self._alerts: dict[tuple[int, str], SubscriptionAlert] = {}

    def raise_alert(self, site_id: int, vendor: str, detail: str) -> SubscriptionAlert:
        now = datetime.utcnow()
        key = (site_id, vendor)
        alert = self._alerts.get(key)
        if alert is None:
            alert = self._alerts[key] = SubscriptionAlert(site_id, vendor, detail, now, now)
            logger.warning("Subscription expired for %s account of site %s: %s", vendor, site_id, detail)
        else:
            alert.detail = detail
            alert.last_seen_at = now
        return alert

    def clear(self, site_id: int, vendor: str) -> bool:
        if self._alerts.pop((site_id, vendor), None) is not None:
            logger.info("Subscription alert cleared for %s account of site %s", vendor, site_id)
            return True
        return False

    def is_active(self, site_id: int, vendor: str) -> bool:
        return (site_id, vendor) in self._alerts

    def active(self, site_id: int | None = None) -> list[SubscriptionAlert]:
        return [
            alert
            for alert in self._alerts.values()
            if site_id is None or alert.site_id == site_id
        ]
