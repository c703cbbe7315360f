from __future__ import annotations

import base64
import binascii
import hmac
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from io import BytesIO
from typing import Callable, Sequence
from urllib.parse import quote, urlencode

import pyotp

from .errors import InvalidCode, InvalidSecret

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_ALGORITHM = "SHA1"
SECRET_LENGTH = 32  # base32 chars -> 160 bits
B32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"

BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits

Chooser = Callable[[Sequence[str]], str]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TotpProvisioning:
    secret: str
    provisioning_uri: str


@dataclass(frozen=True)
class BackupCodeMatch:
    matched: bool
    remaining: list[str] = field(default_factory=list)


def _normalize_secret(secret_b32: str) -> str:
    s = (secret_b32 or "").strip().replace(" ", "").upper()
    if not s:
        raise InvalidSecret("TOTP secret is empty")
    try:
        base64.b32decode(s + "=" * (-len(s) % 8), casefold=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidSecret("TOTP secret is not valid base32") from e
    return s


def _totp(secret_b32: str) -> pyotp.TOTP:
    return pyotp.TOTP(_normalize_secret(secret_b32), digits=TOTP_DIGITS, interval=TOTP_PERIOD)


def new_totp_secret(choice: Chooser = secrets.choice) -> str:
    return "".join(choice(B32_ALPHABET) for _ in range(SECRET_LENGTH))


def provisioning_uri(secret_b32: str, account_label: str, issuer: str) -> str:
    secret = _normalize_secret(secret_b32)
    label = f"{quote(issuer, safe='')}:{quote(account_label, safe='@')}"
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": TOTP_ALGORITHM,
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{params}"


def generate_secret(account_label: str, issuer: str, *, choice: Chooser = secrets.choice) -> TotpProvisioning:
    secret = new_totp_secret(choice)
    return TotpProvisioning(secret=secret, provisioning_uri=provisioning_uri(secret, account_label, issuer))


def render_provisioning_image(uri: str) -> str:
    """PNG data URL of the provisioning QR code."""
    import qrcode

    img = qrcode.make(uri)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def totp_at(secret_b32: str, for_time: datetime, offset: int = 0) -> str:
    return _totp(secret_b32).at(for_time, offset)


def verify_totp(secret_b32: str, code: str, *, window: int = 2, for_time: datetime | None = None) -> bool:
    """Check ``code`` against the steps ``now - window .. now + window``.

    Every step is compared; the loop never exits early, so the time taken
    does not depend on which step (if any) matched.
    """
    totp = _totp(secret_b32)
    candidate = (code or "").strip().replace(" ", "")
    if not candidate:
        raise InvalidCode("verification code is empty")

    when = for_time or now_utc()
    given = candidate.encode("utf-8")
    matched = False
    for offset in range(-window, window + 1):
        expected = totp.at(when, offset).encode("ascii")
        matched = hmac.compare_digest(expected, given) or matched
    return matched


def generate_backup_codes(count: int = 8, *, choice: Chooser = secrets.choice) -> list[str]:
    return ["".join(choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH)) for _ in range(count)]


def normalize_backup_code(code: str | None) -> str:
    return (code or "").strip().upper()


def consume_backup_code(codes: Sequence[str], candidate: str | None) -> BackupCodeMatch:
    """Remove the one stored code equal to ``candidate`` (case-insensitive)."""
    wanted = normalize_backup_code(candidate)
    remaining = list(codes)
    if not wanted:
        return BackupCodeMatch(matched=False, remaining=remaining)
    for i, code in enumerate(remaining):
        if hmac.compare_digest(normalize_backup_code(code).encode("utf-8"), wanted.encode("utf-8")):
            del remaining[i]
            return BackupCodeMatch(matched=True, remaining=remaining)
    return BackupCodeMatch(matched=False, remaining=remaining)
