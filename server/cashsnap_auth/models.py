import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Text, Boolean, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from .db import Base


class AppUser(Base):
    __tablename__ = "app_users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String, unique=True, nullable=False, index=True)  # e-mail; also the TOTP account label
    password_hash = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # Pending TOTP enrollment (secret generated but not yet proven with a code)
    totp_pending_enc = Column(Text)
    totp_pending_iv = Column(String)
    mfa_pending_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AppSession(Base):
    __tablename__ = "app_sessions"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_sha256 = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # 2FA gating for this session
    mfa_state = Column(String, nullable=False, default="unchallenged")
    mfa_method = Column(String)  # totp|backup_code|trusted_device|not_enrolled
    mfa_verified_at = Column(DateTime(timezone=True))
    device_fingerprint = Column(String)


class UserTwoFactor(Base):
    """Per-user 2FA enrollment.

    Rows written before encryption was introduced carry the plaintext
    ``secret_key`` / ``backup_codes`` columns. Every write goes through the
    encrypted columns and nulls the plaintext ones.
    """

    __tablename__ = "user_2fa"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False, unique=True)
    is_enabled = Column(Boolean, nullable=False, default=False)

    secret_key_enc = Column(Text)
    secret_iv = Column(String)
    backup_codes_enc = Column(Text)
    backup_iv = Column(String)

    # legacy plaintext
    secret_key = Column(String)
    backup_codes = Column(JSON(none_as_null=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def has_encrypted_secret(self) -> bool:
        return bool(self.secret_key_enc and self.secret_iv)

    @property
    def has_legacy_secret(self) -> bool:
        return bool(self.secret_key)

    @property
    def has_encrypted_backup_codes(self) -> bool:
        return bool(self.backup_codes_enc and self.backup_iv)

    @property
    def has_legacy_backup_codes(self) -> bool:
        return self.backup_codes is not None

    @property
    def has_legacy_fields(self) -> bool:
        return self.has_legacy_secret or self.has_legacy_backup_codes


class TrustedDevice(Base):
    __tablename__ = "trusted_devices"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False, index=True)
    device_fingerprint = Column(String, nullable=False)
    device_name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index("ix_trusted_devices_user_fingerprint", "user_id", "device_fingerprint"),
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    action = Column(String, nullable=False, index=True)

    actor_user_id = Column(UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="SET NULL"), nullable=True, index=True)
    actor_username = Column(String, nullable=True)

    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)

    target_type = Column(String, nullable=True, index=True)
    target_id = Column(String, nullable=True, index=True)
    target_name = Column(String, nullable=True)

    success = Column(Boolean, nullable=False, default=True)
    meta = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index("ix_audit_events_actor_created", "actor_user_id", "created_at"),
        Index("ix_audit_events_action_created", "action", "created_at"),
    )
