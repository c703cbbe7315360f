from __future__ import annotations

import hashlib
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_db
from .models import AppSession, AppUser
from .services.encryption import EncryptionOracle, get_oracle
from .services.two_factor import TwoFactorStore

SESSION_COOKIE = "cashsnap_session"
CSRF_COOKIE = "cashsnap_csrf"


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def get_current_session_from_request(request: Request, db: Session) -> tuple[AppSession, AppUser] | None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    token_hash = sha256_hex(token)
    now = datetime.now(timezone.utc)
    sess = db.execute(
        select(AppSession).where(AppSession.token_sha256 == token_hash, AppSession.expires_at > now)
    ).scalar_one_or_none()
    if not sess:
        return None
    user = db.execute(
        select(AppUser).where(AppUser.id == sess.user_id, AppUser.is_active == True)  # noqa: E712
    ).scalar_one_or_none()
    if not user:
        return None
    return sess, user


def require_session(request: Request, db: Session = Depends(get_db)) -> tuple[AppSession, AppUser]:
    """Password-authenticated session; 2FA may still be pending."""
    res = get_current_session_from_request(request, db)
    if not res:
        raise HTTPException(401, "Not authenticated")
    return res


def require_verified_session(res: tuple[AppSession, AppUser] = Depends(require_session)) -> tuple[AppSession, AppUser]:
    """Session that has also passed (or was exempt from) the 2FA challenge."""
    sess, _user = res
    if not sess.mfa_verified_at:
        raise HTTPException(403, "2FA verification required")
    return res


def get_encryption_oracle() -> EncryptionOracle:
    return get_oracle()


def get_two_factor_store(
    db: Session = Depends(get_db), oracle: EncryptionOracle = Depends(get_encryption_oracle)
) -> TwoFactorStore:
    return TwoFactorStore(db, oracle)
