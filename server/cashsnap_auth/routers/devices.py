from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import require_verified_session
from ..models import AppSession, AppUser, TrustedDevice
from ..schemas import TrustCurrentDeviceRequest
from ..services.audit import log_event
from ..services.db_utils import as_utc
from ..services.device_trust import DeviceTrustManager, device_name
from ..services.verification import VerificationMethod, VerificationState

router = APIRouter(prefix="/auth/devices", tags=["devices"])


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def _device_out(d: TrustedDevice, current_fingerprint: str | None) -> dict:
    return {
        "id": str(d.id),
        "device_name": d.device_name,
        "created_at": _iso(d.created_at),
        "last_used_at": _iso(d.last_used_at),
        "expires_at": _iso(d.expires_at),
        "current": bool(current_fingerprint) and d.device_fingerprint == current_fingerprint,
    }


@router.get("")
def list_devices(db: Session = Depends(get_db), res: tuple[AppSession, AppUser] = Depends(require_verified_session)):
    sess, user = res
    devices = DeviceTrustManager(db, current_fingerprint=sess.device_fingerprint)
    items = [_device_out(d, sess.device_fingerprint) for d in devices.list_trusted(user.id)]
    return {"ok": True, "items": items, "total": len(items)}


@router.post("/current")
def trust_current_device(
    payload: TrustCurrentDeviceRequest,
    request: Request,
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_verified_session),
):
    sess, user = res
    if not sess.device_fingerprint:
        raise HTTPException(400, "Run the 2FA challenge from this device first")

    devices = DeviceTrustManager(db, current_fingerprint=sess.device_fingerprint)
    row = devices.trust(user.id, sess.device_fingerprint, payload.device_name or device_name(request.headers.get("User-Agent")))
    log_event(db, action="device.trust", actor=user, request=request, target_type="trusted_device", target_id=str(row.id), target_name=row.device_name)
    db.commit()
    return {"ok": True, "device": _device_out(row, sess.device_fingerprint)}


@router.delete("/{device_id}")
def revoke_device(
    device_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_verified_session),
):
    sess, user = res
    devices = DeviceTrustManager(db, current_fingerprint=sess.device_fingerprint)
    row = devices.revoke(user.id, device_id)

    current_revoked = devices.current_device_trusted is False
    reverify = current_revoked and sess.mfa_method == VerificationMethod.TRUSTED_DEVICE.value
    if reverify:
        # This session only got in on the strength of the grant we just removed.
        sess.mfa_verified_at = None
        sess.mfa_method = None
        sess.mfa_state = VerificationState.UNCHALLENGED.value

    log_event(db, action="device.revoke", actor=user, request=request, target_type="trusted_device", target_id=str(device_id), target_name=row.device_name)
    db.commit()
    return {"ok": True, "current_device_revoked": current_revoked, "reverify_required": reverify}
