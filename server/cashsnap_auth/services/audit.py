from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Request
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models import AppUser, AuditEvent

logger = logging.getLogger(__name__)

VERIFY_ACTION = "mfa.verify"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def client_ip(request: Request | None) -> str | None:
    if not request:
        return None
    xff = request.headers.get("X-Forwarded-For")
    if xff:
        return xff.split(",")[0].strip()
    xri = request.headers.get("X-Real-IP")
    if xri:
        return xri.strip()
    return request.client.host if request.client else None


def user_agent(request: Request | None) -> str | None:
    if not request:
        return None
    ua = request.headers.get("User-Agent")
    return (ua[:500] if ua else None)


def log_event(
    db: Session,
    *,
    action: str,
    actor: AppUser | None,
    request: Request | None = None,
    success: bool = True,
    target_type: str | None = None,
    target_id: str | None = None,
    target_name: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Best-effort security audit entry.

    Never raises (audit logging must not break the primary action) and never
    commits; the caller's transaction decides. Do not put secrets or codes in ``meta``.
    """

    try:
        ev = AuditEvent(
            action=(action or "").strip()[:120],
            actor_user_id=getattr(actor, "id", None) if actor else None,
            actor_username=getattr(actor, "username", None) if actor else None,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
            success=bool(success),
            target_type=(target_type or "")[:80] if target_type else None,
            target_id=(target_id or "")[:120] if target_id else None,
            target_name=(target_name or "")[:200] if target_name else None,
            meta=(meta or {}),
            created_at=_now(),
        )
        db.add(ev)
    except Exception:
        logger.exception("Failed to record audit event %s", action)


def verification_stats(db: Session, user: AppUser, *, now: datetime | None = None) -> dict[str, Any]:
    """Attempt counts for the user's 2FA verifications."""
    now = now or _now()
    base = select(func.count()).select_from(AuditEvent).where(
        AuditEvent.actor_user_id == user.id, AuditEvent.action == VERIFY_ACTION
    )
    total = db.execute(base).scalar_one()
    failed = db.execute(base.where(AuditEvent.success == False)).scalar_one()  # noqa: E712
    last_24h = db.execute(base.where(AuditEvent.created_at > now - timedelta(hours=24))).scalar_one()
    success_rate = round((total - failed) / total * 100, 1) if total else None
    return {
        "total_attempts": int(total),
        "failed_attempts": int(failed),
        "success_rate": success_rate,
        "last_24h_attempts": int(last_24h),
    }
