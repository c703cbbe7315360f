from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_two_factor_store, require_verified_session
from ..models import AppSession, AppUser
from ..services.audit import log_event, verification_stats
from ..services.device_trust import DeviceTrustManager
from ..services.two_factor import TwoFactorStore

router = APIRouter(prefix="/auth/security", tags=["security"])


@router.get("/overview")
def security_overview(
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_verified_session),
    store: TwoFactorStore = Depends(get_two_factor_store),
):
    _sess, user = res
    record = store.fetch(user.id)
    devices = DeviceTrustManager(db).list_trusted(user.id)
    return {
        "ok": True,
        "two_factor": {
            "enabled": bool(record and record.is_enabled),
            "backup_codes_remaining": len(store.resolve_backup_codes(record)) if record else 0,
            "legacy_plaintext": bool(record and record.has_legacy_fields),
        },
        "trusted_devices": len(devices),
        "verification": verification_stats(db, user),
    }


@router.post("/migrate-legacy")
def migrate_legacy(
    request: Request,
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_verified_session),
    store: TwoFactorStore = Depends(get_two_factor_store),
):
    _sess, user = res
    migrated = store.migrate_legacy(user.id)
    if migrated:
        log_event(db, action="mfa.migrate_legacy", actor=user, request=request)
        db.commit()
    return {"ok": True, "migrated": migrated}
