from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from passlib.context import CryptContext
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..deps import CSRF_COOKIE, SESSION_COOKIE, get_current_session_from_request, require_session, sha256_hex
from ..models import AppSession, AppUser
from ..schemas import LoginRequest
from ..services.audit import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def _set_csrf_cookie(resp: JSONResponse, expires: datetime | None = None) -> None:
    # Double-submit cookie: the frontend echoes this value in X-CSRF-Token.
    resp.set_cookie(
        key=CSRF_COOKIE,
        value=secrets.token_urlsafe(32),
        httponly=False,
        samesite="lax",
        secure=bool(settings.ui_cookie_secure),
        expires=int(expires.timestamp()) if expires else None,
        path="/",
    )


@router.post("/login")
def auth_login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    username = (payload.username or "").strip()
    password = payload.password or ""
    if not username or not password:
        raise HTTPException(400, "username and password are required")

    user = db.execute(
        select(AppUser).where(AppUser.username == username, AppUser.is_active == True)  # noqa: E712
    ).scalar_one_or_none()
    if not user or not pwd_context.verify(password, user.password_hash):
        log_event(db, action="auth.login", actor=user, request=request, success=False)
        db.commit()
        raise HTTPException(401, "Invalid username or password")

    token = secrets.token_urlsafe(32)
    now = datetime.now(timezone.utc)
    expires = now + timedelta(days=int(settings.ui_session_days))

    # Cleanup expired sessions (best-effort)
    db.execute(delete(AppSession).where(AppSession.expires_at <= now))

    # Every session starts unverified; the client runs /auth/mfa/challenge next.
    db.add(AppSession(user_id=user.id, token_sha256=sha256_hex(token), expires_at=expires))
    log_event(db, action="auth.login", actor=user, request=request)
    db.commit()

    resp = JSONResponse({"ok": True, "username": user.username, "mfa_challenge_required": True})
    resp.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=bool(settings.ui_cookie_secure),
        expires=int(expires.timestamp()),
        path="/",
    )
    _set_csrf_cookie(resp, expires)
    return resp


@router.post("/logout")
def auth_logout(request: Request, db: Session = Depends(get_db)):
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        res = get_current_session_from_request(request, db)
        db.execute(delete(AppSession).where(AppSession.token_sha256 == sha256_hex(token)))
        if res:
            log_event(db, action="auth.logout", actor=res[1], request=request)
        db.commit()
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE, path="/")
    resp.delete_cookie(CSRF_COOKIE, path="/")
    return resp


@router.get("/me")
def auth_me(request: Request, res: tuple[AppSession, AppUser] = Depends(require_session)):
    sess, user = res
    resp = JSONResponse(
        {
            "ok": True,
            "username": user.username,
            "mfa": {
                "state": sess.mfa_state,
                "verified": bool(sess.mfa_verified_at),
                "method": sess.mfa_method,
            },
        }
    )
    # Ensure CSRF cookie exists for older sessions.
    if not request.cookies.get(CSRF_COOKIE):
        _set_csrf_cookie(resp)
    return resp
