"""Common interface every lock vendor adapter implements."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from yacht_locks.core.results import (
    CommandAttempt,
    ErrorKind,
    LockStatus,
    ProvisionedKey,
    VendorError,
)
from yacht_locks.db.models import Device

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VendorCredentials:
    """Snapshot of a credential set handed to an adapter for one call."""

    credential_id: int
    site_id: int
    vendor: str
    client_id: str
    client_secret: str
    region: Optional[str] = None
    username: Optional[str] = None
    password_md5: Optional[str] = None

    def __repr__(self) -> str:
        # Keep secrets out of logs and tracebacks
        return (
            f"VendorCredentials(id={self.credential_id}, site={self.site_id}, "
            f"vendor={self.vendor}, client_id={self.client_id[:6]}...)"
        )


@dataclass
class CachedToken:
    token: str
    expires_at: float  # monotonic seconds
    uid: Any = None


class TokenCache:
    """Access tokens per credential set, owned by one adapter instance."""

    def __init__(self, margin_seconds: float = 60.0):
        self._margin = margin_seconds
        self._tokens: dict[int, CachedToken] = {}

    def get(self, credential_id: int, now: float | None = None) -> Optional[CachedToken]:
        cached = self._tokens.get(credential_id)
        if cached is None:
            return None
        now = now if now is not None else time.monotonic()
        if cached.expires_at <= now:
            del self._tokens[credential_id]
            return None
        return cached

    def put(
        self,
        credential_id: int,
        token: str,
        expires_in: float,
        uid: Any = None,
        now: float | None = None,
    ) -> CachedToken:
        now = now if now is not None else time.monotonic()
        cached = CachedToken(token=token, expires_at=now + expires_in - self._margin, uid=uid)
        self._tokens[credential_id] = cached
        return cached

    def invalidate(self, credential_id: int) -> None:
        self._tokens.pop(credential_id, None)

    def __len__(self) -> int:
        return len(self._tokens)


class LockAdapter(ABC):
    """Translates abstract lock commands into one vendor's cloud API.

    Adapters only talk to the network. They never write to the database and
    never swallow failures: every problem is raised as a ``VendorError``.
    """

    vendor: str = ""

    def __init__(
        self,
        timeout: float = 12.0,
        token_margin_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self._tokens = TokenCache(token_margin_seconds)
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def invalidate(self, credential_id: int) -> None:
        """Forget any cached token for a credential set (e.g. after an edit)."""
        self._tokens.invalidate(credential_id)
        logger.debug("%s token cache invalidated for credential set %s", self.vendor, credential_id)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport problems onto the taxonomy."""
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise VendorError(ErrorKind.VENDOR_UNAVAILABLE, f"{self.vendor} request timed out") from e
        except httpx.RequestError as e:
            raise VendorError(
                ErrorKind.VENDOR_UNAVAILABLE, f"{self.vendor} request failed: {e}"
            ) from e

        logger.debug("%s %s -> %s", method, url.split("?")[0], response.status_code)
        if response.status_code in (401, 403):
            raise VendorError(
                ErrorKind.AUTH_FAILED, f"{self.vendor} rejected the request ({response.status_code})"
            )
        if response.status_code == 404:
            raise VendorError(ErrorKind.DEVICE_NOT_FOUND, f"{self.vendor} returned 404 for {url}")
        if response.status_code == 429 or response.status_code >= 500:
            raise VendorError(
                ErrorKind.VENDOR_UNAVAILABLE,
                f"{self.vendor} returned HTTP {response.status_code}",
            )
        if response.status_code >= 400:
            raise VendorError(
                ErrorKind.UNKNOWN,
                f"{self.vendor} returned HTTP {response.status_code}: {response.text[:200]}",
            )
        return response

    async def _send_token_request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Like ``_send``, but any rejection of the token call is a credentials problem."""
        try:
            return await self._send(method, url, **kwargs)
        except VendorError as e:
            if e.kind is ErrorKind.VENDOR_UNAVAILABLE:
                raise
            raise VendorError(ErrorKind.AUTH_FAILED, f"{self.vendor} token request failed: {e.detail}") from e

    @staticmethod
    def _json(response: httpx.Response, vendor: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise VendorError(ErrorKind.UNKNOWN, f"{vendor} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise VendorError(ErrorKind.UNKNOWN, f"{vendor} returned an unexpected body shape")
        return data

    @abstractmethod
    async def status(self, device: Device, creds: VendorCredentials) -> LockStatus:
        """Read lock state and telemetry. Never changes the device."""

    @abstractmethod
    async def lock(self, device: Device, creds: VendorCredentials) -> list[CommandAttempt]:
        """Ask the cloud to lock. Returning means the cloud accepted it.

        Returns every payload sent, the accepted one last.
        """

    @abstractmethod
    async def unlock(self, device: Device, creds: VendorCredentials) -> list[CommandAttempt]:
        """Ask the cloud to unlock. Returning means the cloud accepted it."""

    @abstractmethod
    async def diagnostics(self, device: Device, creds: VendorCredentials) -> dict[str, Any]:
        """Raw device info, status codes and supported commands for support staff."""

    @abstractmethod
    async def provision_key(self, device: Device, creds: VendorCredentials) -> ProvisionedKey:
        """Pair a secure key with the device and return the key material."""

    async def create_passcode(
        self,
        device: Device,
        creds: VendorCredentials,
        passcode: str,
        name: str,
        starts_at: datetime,
        ends_at: datetime,
    ) -> int:
        """Add a keypad code valid between two times; returns the vendor's passcode id."""
        raise VendorError(ErrorKind.UNKNOWN, f"{self.vendor} locks do not support keypad passcodes")

    async def delete_passcode(
        self, device: Device, creds: VendorCredentials, vendor_passcode_id: int
    ) -> None:
        raise VendorError(ErrorKind.UNKNOWN, f"{self.vendor} locks do not support keypad passcodes")
