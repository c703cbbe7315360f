"""Authoritative per-user 2FA enrollment record.

Reads accept both the legacy plaintext shape and the encrypted shape of a
``user_2fa`` row; every write produces the encrypted shape and clears the
plaintext columns.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models import UserTwoFactor
from .db_utils import transaction
from .encryption import EncryptionOracle
from .errors import (
    BackupCodeConflict,
    DecryptionFailure,
    InvalidCode,
    InvalidVerificationCode,
    NoSecretConfigured,
    SettingsStoreError,
    TwoFactorNotEnrolled,
)
from .mfa import consume_backup_code, generate_backup_codes, now_utc, verify_totp

logger = logging.getLogger(__name__)

CONSUME_ATTEMPTS = 3


@dataclass(frozen=True)
class EnableResult:
    enrollment: UserTwoFactor
    backup_codes: list[str]


class TwoFactorStore:
    def __init__(
        self,
        db: Session,
        oracle: EncryptionOracle,
        *,
        clock: Callable[[], datetime] = now_utc,
        valid_window: int | None = None,
        backup_code_count: int | None = None,
    ):
        self.db = db
        self.oracle = oracle
        self.clock = clock
        self.valid_window = int(settings.mfa_totp_valid_window if valid_window is None else valid_window)
        self.backup_code_count = int(settings.mfa_backup_code_count if backup_code_count is None else backup_code_count)

    # -- reads -----------------------------------------------------------

    def fetch(self, user_id: uuid.UUID) -> UserTwoFactor | None:
        try:
            return self.db.execute(select(UserTwoFactor).where(UserTwoFactor.user_id == user_id)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise SettingsStoreError(f"failed to read 2FA settings: {e.__class__.__name__}") from e

    def resolve_secret(self, record: UserTwoFactor) -> str:
        if record.has_encrypted_secret:
            return self.oracle.decrypt(record.secret_key_enc, record.secret_iv)
        if record.has_legacy_secret:
            return record.secret_key
        raise NoSecretConfigured()

    def resolve_backup_codes(self, record: UserTwoFactor) -> list[str]:
        if record.has_encrypted_backup_codes:
            raw = self.oracle.decrypt(record.backup_codes_enc, record.backup_iv)
            try:
                codes = json.loads(raw)
            except ValueError as e:
                raise DecryptionFailure("backup codes payload is not JSON") from e
            return _as_code_list(codes)
        if record.has_legacy_backup_codes:
            return _as_code_list(record.backup_codes)
        return []

    # -- writes ----------------------------------------------------------

    def _encrypted_codes(self, codes: list[str]) -> dict[str, Any]:
        envelope = self.oracle.encrypt(json.dumps(codes))
        return {"backup_codes_enc": envelope.ciphertext, "backup_iv": envelope.nonce, "backup_codes": None}

    def _upsert(self, user_id: uuid.UUID, values: dict[str, Any]) -> None:
        dialect = self.db.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            if dialect == "postgresql":
                from sqlalchemy.dialects.postgresql import insert
            else:
                from sqlalchemy.dialects.sqlite import insert

            now = values["updated_at"]
            stmt = insert(UserTwoFactor).values(id=uuid.uuid4(), user_id=user_id, created_at=now, **values)
            stmt = stmt.on_conflict_do_update(index_elements=[UserTwoFactor.user_id], set_=values)
            self.db.execute(stmt)
            return

        existing = self.db.execute(select(UserTwoFactor).where(UserTwoFactor.user_id == user_id)).scalar_one_or_none()
        if existing is None:
            self.db.add(UserTwoFactor(user_id=user_id, created_at=values["updated_at"], **values))
        else:
            for k, v in values.items():
                setattr(existing, k, v)

    def enable(self, user_id: uuid.UUID, secret_b32: str, verification_code: str) -> EnableResult:
        """Turn 2FA on once the user proves their authenticator produces valid codes.

        Returns the plaintext backup codes; this is the only time they are
        ever available unencrypted.
        """
        try:
            ok = verify_totp(secret_b32, verification_code, window=self.valid_window, for_time=self.clock())
        except InvalidCode as e:
            raise InvalidVerificationCode() from e
        if not ok:
            raise InvalidVerificationCode()

        backup_codes = generate_backup_codes(self.backup_code_count)
        secret_env = self.oracle.encrypt(secret_b32.strip().replace(" ", "").upper())
        values: dict[str, Any] = {
            "is_enabled": True,
            "secret_key_enc": secret_env.ciphertext,
            "secret_iv": secret_env.nonce,
            "secret_key": None,
            "updated_at": self.clock(),
        }
        values.update(self._encrypted_codes(backup_codes))

        try:
            with transaction(self.db):
                self._upsert(user_id, values)
            record = self.fetch(user_id)
        except SQLAlchemyError as e:
            raise SettingsStoreError(f"failed to save 2FA settings: {e.__class__.__name__}") from e

        logger.info("2FA enabled for user %s", user_id)
        return EnableResult(enrollment=record, backup_codes=backup_codes)

    def _require(self, user_id: uuid.UUID) -> UserTwoFactor:
        record = self.fetch(user_id)
        if record is None:
            raise TwoFactorNotEnrolled()
        return record

    def disable(self, user_id: uuid.UUID) -> UserTwoFactor:
        # Secret and backup codes stay in place; a later enable provisions a new secret anyway.
        record = self._require(user_id)
        try:
            with transaction(self.db):
                record.is_enabled = False
                record.updated_at = self.clock()
        except SQLAlchemyError as e:
            raise SettingsStoreError(f"failed to disable 2FA: {e.__class__.__name__}") from e
        logger.info("2FA disabled for user %s", user_id)
        return record

    def regenerate_backup_codes(self, user_id: uuid.UUID) -> list[str]:
        record = self._require(user_id)
        codes = generate_backup_codes(self.backup_code_count)
        values = self._encrypted_codes(codes)
        try:
            with transaction(self.db):
                for k, v in values.items():
                    setattr(record, k, v)
                record.updated_at = self.clock()
        except SQLAlchemyError as e:
            raise SettingsStoreError(f"failed to store backup codes: {e.__class__.__name__}") from e
        logger.info("Backup codes regenerated for user %s", user_id)
        return codes

    def consume_backup_code(self, user_id: uuid.UUID, candidate: str) -> bool:
        """Atomically spend one backup code.

        The write is conditional on the envelope nonce read alongside the
        codes (nonces are unique per encryption), so a concurrent consumer
        that already rewrote the list makes this update match zero rows.
        The list is then re-read: if the code is gone it no longer matches.
        """
        for _ in range(CONSUME_ATTEMPTS):
            record = self._require(user_id)
            result = consume_backup_code(self.resolve_backup_codes(record), candidate)
            if not result.matched:
                return False

            guard = (
                UserTwoFactor.backup_iv == record.backup_iv
                if record.has_encrypted_backup_codes
                else UserTwoFactor.backup_iv.is_(None)
            )
            values = self._encrypted_codes(result.remaining)
            values["updated_at"] = self.clock()
            try:
                with transaction(self.db):
                    res = self.db.execute(
                        update(UserTwoFactor)
                        .where(UserTwoFactor.user_id == user_id, guard)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount != 1:
                        raise _LostRace()
            except _LostRace:
                logger.warning("Backup code list changed concurrently for user %s; retrying", user_id)
                self.db.expire_all()
                continue
            except SQLAlchemyError as e:
                raise SettingsStoreError(f"failed to store backup codes: {e.__class__.__name__}") from e

            self.db.expire_all()
            logger.info("Backup code used by user %s (%s remaining)", user_id, len(result.remaining))
            return True

        raise BackupCodeConflict()

    def migrate_legacy(self, user_id: uuid.UUID) -> bool:
        """Move plaintext secret/backup codes into the encrypted columns. Returns True if anything moved."""
        record = self.fetch(user_id)
        if record is None or not record.has_legacy_fields:
            return False

        values: dict[str, Any] = {}
        if record.has_legacy_secret:
            if not record.has_encrypted_secret:
                env = self.oracle.encrypt(record.secret_key)
                values.update(secret_key_enc=env.ciphertext, secret_iv=env.nonce)
            values["secret_key"] = None
        if record.has_legacy_backup_codes:
            if not record.has_encrypted_backup_codes:
                values.update(self._encrypted_codes(_as_code_list(record.backup_codes)))
            values["backup_codes"] = None

        try:
            with transaction(self.db):
                for k, v in values.items():
                    setattr(record, k, v)
                record.updated_at = self.clock()
        except SQLAlchemyError as e:
            raise SettingsStoreError(f"failed to migrate 2FA settings: {e.__class__.__name__}") from e
        logger.info("Migrated legacy plaintext 2FA fields for user %s", user_id)
        return True


class _LostRace(Exception):
    pass


def _as_code_list(value: Any) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(c, str) for c in value):
        raise DecryptionFailure("backup codes payload is not a list of strings")
    return list(value)
