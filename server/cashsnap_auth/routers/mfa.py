from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..deps import get_encryption_oracle, get_two_factor_store, require_session, require_verified_session
from ..models import AppSession, AppUser
from ..schemas import ChallengeRequest, CodePayload, VerifyRequest
from ..services.audit import VERIFY_ACTION, log_event
from ..services.db_utils import as_utc
from ..services.device_trust import DeviceTraits, DeviceTrustManager, compute_fingerprint, device_name
from ..services.encryption import EncryptionOracle
from ..services.errors import DeviceTrustError
from ..services.mfa import generate_secret, render_provisioning_image
from ..services.two_factor import TwoFactorStore
from ..services.verification import DenialReason, VerificationFlow, VerificationOutcome, VerificationState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/mfa", tags=["mfa"])

_DENIAL_STATUS = {
    DenialReason.INVALID_CODE: 400,
    DenialReason.NO_SECRET_CONFIGURED: 409,
    DenialReason.INVALID_SECRET: 409,
    DenialReason.SERVICE_UNAVAILABLE: 503,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _apply_outcome(sess: AppSession, flow: VerificationFlow, outcome: VerificationOutcome) -> None:
    sess.mfa_state = flow.state.value
    if outcome.verified:
        sess.mfa_verified_at = _now()
        sess.mfa_method = outcome.method.value if outcome.method else None


def _session_flow(
    store: TwoFactorStore, devices: DeviceTrustManager, sess: AppSession, user: AppUser, fingerprint: str | None = None
) -> VerificationFlow:
    return VerificationFlow(
        store,
        devices,
        user.id,
        fingerprint or sess.device_fingerprint,
        state=VerificationState(sess.mfa_state or VerificationState.UNCHALLENGED.value),
        method=sess.mfa_method,
    )


def _outcome_body(outcome: VerificationOutcome) -> dict:
    return {
        "ok": outcome.verified,
        "state": outcome.state.value,
        "verified": outcome.verified,
        "method": outcome.method.value if outcome.method else None,
        "used_backup_code": outcome.used_backup_code,
    }


@router.get("/status")
def mfa_status(
    res: tuple[AppSession, AppUser] = Depends(require_session),
    store: TwoFactorStore = Depends(get_two_factor_store),
):
    sess, user = res
    record = store.fetch(user.id)
    enabled = bool(record and record.is_enabled)
    return {
        "ok": True,
        "enabled": enabled,
        "enrolled": record is not None,
        "backup_codes_remaining": len(store.resolve_backup_codes(record)) if record else 0,
        "legacy_plaintext": bool(record and record.has_legacy_fields),
        "pending_enrollment": bool(user.totp_pending_enc),
        "session": {"state": sess.mfa_state, "verified": bool(sess.mfa_verified_at), "method": sess.mfa_method},
    }


@router.post("/enroll/start")
def enroll_start(
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_verified_session),
    oracle: EncryptionOracle = Depends(get_encryption_oracle),
):
    _sess, user = res
    provisioning = generate_secret(user.username, settings.mfa_totp_issuer)
    envelope = oracle.encrypt(provisioning.secret)

    user.totp_pending_enc = envelope.ciphertext
    user.totp_pending_iv = envelope.nonce
    user.mfa_pending_at = _now()
    db.commit()

    # QR image is a convenience; the frontend can show the URI/secret instead.
    qr_data_url = None
    try:
        qr_data_url = render_provisioning_image(provisioning.provisioning_uri)
    except Exception:
        logger.warning("QR rendering failed; returning otpauth URI only", exc_info=True)

    return {
        "ok": True,
        "otpauth_uri": provisioning.provisioning_uri,
        "secret": provisioning.secret,
        "qr_data_url": qr_data_url,
    }


@router.post("/enroll/confirm")
def enroll_confirm(
    payload: CodePayload,
    request: Request,
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_verified_session),
    store: TwoFactorStore = Depends(get_two_factor_store),
):
    sess, user = res
    if not user.totp_pending_enc or not user.totp_pending_iv:
        raise HTTPException(400, "No pending 2FA enrollment")

    secret = store.oracle.decrypt(user.totp_pending_enc, user.totp_pending_iv)
    result = store.enable(user.id, secret, payload.code)

    user.totp_pending_enc = None
    user.totp_pending_iv = None
    user.mfa_pending_at = None
    sess.mfa_state = VerificationState.VERIFIED.value
    sess.mfa_method = "totp"
    sess.mfa_verified_at = _now()
    log_event(db, action="mfa.enable", actor=user, request=request, target_type="user_2fa", target_id=str(result.enrollment.id))
    db.commit()

    return {"ok": True, "enabled": True, "backup_codes": result.backup_codes}


@router.post("/challenge")
def challenge(
    payload: ChallengeRequest,
    request: Request,
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_session),
    store: TwoFactorStore = Depends(get_two_factor_store),
):
    sess, user = res
    traits = payload.device
    fingerprint = compute_fingerprint(
        DeviceTraits(
            user_agent=traits.user_agent if traits.user_agent is not None else (request.headers.get("User-Agent") or ""),
            language=traits.language,
            screen_width=traits.screen_width,
            screen_height=traits.screen_height,
            timezone_offset=traits.timezone_offset,
            session_storage=traits.session_storage,
            local_storage=traits.local_storage,
            canvas_signature=traits.canvas_signature,
        )
    )

    devices = DeviceTrustManager(db, current_fingerprint=fingerprint)
    flow = _session_flow(store, devices, sess, user, fingerprint)
    outcome = flow.begin()

    sess.device_fingerprint = fingerprint
    _apply_outcome(sess, flow, outcome)
    if outcome.verified:
        log_event(db, action="mfa.challenge.skipped", actor=user, request=request, meta={"method": outcome.method.value})
    db.commit()

    body = _outcome_body(outcome)
    body["ok"] = True
    body["challenge_required"] = not outcome.verified
    body["device_fingerprint"] = fingerprint
    return body


@router.post("/verify")
def verify(
    payload: VerifyRequest,
    request: Request,
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_session),
    store: TwoFactorStore = Depends(get_two_factor_store),
):
    sess, user = res
    devices = DeviceTrustManager(db, current_fingerprint=sess.device_fingerprint)
    flow = _session_flow(store, devices, sess, user)
    outcome = flow.submit(payload.code)

    trusted_device = None
    if outcome.verified and payload.remember_device:
        try:
            row = flow.remember_device(payload.device_name or device_name(request.headers.get("User-Agent")))
            trusted_device = {"id": str(row.id), "device_name": row.device_name, "expires_at": as_utc(row.expires_at).isoformat()}
        except DeviceTrustError:
            # Verification already succeeded; the device just won't be remembered.
            logger.warning("Could not remember device for user %s", user.id, exc_info=True)

    _apply_outcome(sess, flow, outcome)
    log_event(
        db,
        action=VERIFY_ACTION,
        actor=user,
        request=request,
        success=outcome.verified,
        meta={"method": outcome.method.value if outcome.method else None, "reason": outcome.reason.value if outcome.reason else None},
    )
    db.commit()

    if not outcome.verified:
        detail = "Invalid code" if outcome.retryable else "2FA verification unavailable; contact support"
        return JSONResponse(
            status_code=_DENIAL_STATUS[outcome.reason],
            content={
                "detail": detail,
                "code": outcome.reason.value,
                "retryable": outcome.retryable,
                "state": flow.state.value,
            },
        )

    body = _outcome_body(outcome)
    body["trusted_device"] = trusted_device
    return body


@router.post("/cancel")
def cancel(
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_session),
    store: TwoFactorStore = Depends(get_two_factor_store),
):
    sess, user = res
    devices = DeviceTrustManager(db, current_fingerprint=sess.device_fingerprint)
    flow = _session_flow(store, devices, sess, user)
    outcome = flow.cancel()
    sess.mfa_state = flow.state.value
    db.commit()
    return {"ok": True, "state": outcome.state.value}


@router.post("/disable")
def disable(
    request: Request,
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_verified_session),
    store: TwoFactorStore = Depends(get_two_factor_store),
):
    _sess, user = res
    store.disable(user.id)
    log_event(db, action="mfa.disable", actor=user, request=request)
    db.commit()
    return {"ok": True, "enabled": False}


@router.post("/backup-codes/regenerate")
def regenerate_backup_codes(
    request: Request,
    db: Session = Depends(get_db),
    res: tuple[AppSession, AppUser] = Depends(require_verified_session),
    store: TwoFactorStore = Depends(get_two_factor_store),
):
    _sess, user = res
    codes = store.regenerate_backup_codes(user.id)
    log_event(db, action="mfa.backup_codes.regenerate", actor=user, request=request)
    db.commit()
    return {"ok": True, "backup_codes": codes}
