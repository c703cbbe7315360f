from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models import TrustedDevice
from .db_utils import transaction
from .errors import DeviceTrustError, TrustedDeviceNotFound
from .mfa import now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceTraits:
    """Client environment characteristics reported by the browser."""

    user_agent: str = ""
    language: str = ""
    screen_width: int = 0
    screen_height: int = 0
    timezone_offset: int = 0  # minutes, as Date.getTimezoneOffset()
    session_storage: bool = False
    local_storage: bool = False
    canvas_signature: str = ""


def compute_fingerprint(traits: DeviceTraits) -> str:
    # Identification only, not a security boundary; lookups are always scoped by user.
    raw = "|".join(
        [
            traits.user_agent,
            traits.language,
            str(traits.screen_width),
            str(traits.screen_height),
            str(traits.timezone_offset),
            "true" if traits.session_storage else "false",
            "true" if traits.local_storage else "false",
            traits.canvas_signature,
        ]
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


_OS_MARKERS = (
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Win", "Windows"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
)

# Order matters: Edge and Chrome UAs also contain "Safari", Edge UAs contain "Chrome".
_BROWSER_MARKERS = (
    ("Edg", "Edge"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)


def device_name(user_agent: str | None) -> str:
    ua = user_agent or ""
    os_name = next((label for marker, label in _OS_MARKERS if marker in ua), "Unknown OS")
    browser = next((label for marker, label in _BROWSER_MARKERS if marker in ua), "Unknown Browser")
    return f"{browser} on {os_name}"


class DeviceTrustManager:
    """Time-limited trust grants that exempt a device from 2FA challenges.

    ``current_fingerprint`` is the device this manager acts for; its trust
    flag is cached in ``current_device_trusted`` and cleared the moment that
    device is revoked.
    """

    def __init__(
        self,
        db: Session,
        *,
        current_fingerprint: str | None = None,
        clock: Callable[[], datetime] = now_utc,
        trust_days: int | None = None,
    ):
        self.db = db
        self.current_fingerprint = current_fingerprint
        self.current_device_trusted: bool | None = None
        self.clock = clock
        self.trust_days = int(settings.device_trust_days if trust_days is None else trust_days)

    def _live(self, user_id: uuid.UUID, now: datetime):
        return select(TrustedDevice).where(TrustedDevice.user_id == user_id, TrustedDevice.expires_at > now)

    def is_trusted(self, user_id: uuid.UUID, fingerprint: str) -> bool:
        if not fingerprint:
            return False
        now = self.clock()
        try:
            with transaction(self.db):
                row = self.db.execute(
                    self._live(user_id, now)
                    .where(TrustedDevice.device_fingerprint == fingerprint)
                    .order_by(TrustedDevice.expires_at.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if row is not None:
                    row.last_used_at = now
        except SQLAlchemyError as e:
            raise DeviceTrustError(f"failed to check device trust: {e.__class__.__name__}") from e

        trusted = row is not None
        if fingerprint == self.current_fingerprint:
            self.current_device_trusted = trusted
        return trusted

    def trust(self, user_id: uuid.UUID, fingerprint: str, device_name: str) -> TrustedDevice:
        """Grant trust for ``trust_days``. A live grant for the same device is extended, not duplicated."""
        if not fingerprint:
            raise DeviceTrustError("device fingerprint is required")
        now = self.clock()
        expires = now + timedelta(days=self.trust_days)
        name = (device_name or "").strip()[:200] or "Unknown Browser on Unknown OS"
        try:
            with transaction(self.db):
                row = self.db.execute(
                    self._live(user_id, now).where(TrustedDevice.device_fingerprint == fingerprint).limit(1)
                ).scalar_one_or_none()
                if row is None:
                    row = TrustedDevice(
                        user_id=user_id,
                        device_fingerprint=fingerprint,
                        device_name=name,
                        created_at=now,
                        last_used_at=now,
                        expires_at=expires,
                    )
                    self.db.add(row)
                else:
                    row.device_name = name
                    row.last_used_at = now
                    row.expires_at = expires
            self.db.refresh(row)
        except SQLAlchemyError as e:
            raise DeviceTrustError(f"failed to trust device: {e.__class__.__name__}") from e

        if fingerprint == self.current_fingerprint:
            self.current_device_trusted = True
        logger.info("Trusted device %s for user %s until %s", row.id, user_id, expires.isoformat())
        return row

    def list_trusted(self, user_id: uuid.UUID) -> list[TrustedDevice]:
        try:
            rows = self.db.execute(
                self._live(user_id, self.clock()).order_by(TrustedDevice.last_used_at.desc())
            ).scalars().all()
        except SQLAlchemyError as e:
            raise DeviceTrustError(f"failed to list trusted devices: {e.__class__.__name__}") from e
        return list(rows)

    def revoke(self, user_id: uuid.UUID, device_id: uuid.UUID) -> TrustedDevice:
        try:
            row = self.db.execute(
                select(TrustedDevice).where(TrustedDevice.id == device_id, TrustedDevice.user_id == user_id)
            ).scalar_one_or_none()
            if row is None:
                raise TrustedDeviceNotFound()
            fingerprint = row.device_fingerprint
            with transaction(self.db):
                self.db.delete(row)
        except SQLAlchemyError as e:
            raise DeviceTrustError(f"failed to revoke device: {e.__class__.__name__}") from e

        if self.current_fingerprint and fingerprint == self.current_fingerprint:
            self.current_device_trusted = False
        logger.info("Revoked trusted device %s for user %s", device_id, user_id)
        return row
