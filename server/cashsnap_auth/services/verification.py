"""Sign-in 2FA state machine.

    unchallenged -> device_trust_check -> trusted_skip -> verified
                                       -> challenge_required -> awaiting_input
    awaiting_input -> verifying -> verified
                               -> denied (retryable: back to awaiting_input)
    challenge_required | awaiting_input -> cancelled

A trusted device skips the challenge entirely for as long as the trust grant
lives. Users without an enabled enrollment are never challenged.
"""
from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass

from ..models import TrustedDevice
from .device_trust import DeviceTrustManager
from .errors import (
    BackupCodeConflict,
    DeviceTrustError,
    EncryptionFailure,
    InvalidSecret,
    InvalidTransition,
    NoSecretConfigured,
    SettingsStoreError,
)
from .mfa import normalize_backup_code, verify_totp
from .two_factor import TwoFactorStore

logger = logging.getLogger(__name__)


class VerificationState(str, enum.Enum):
    UNCHALLENGED = "unchallenged"
    DEVICE_TRUST_CHECK = "device_trust_check"
    TRUSTED_SKIP = "trusted_skip"
    CHALLENGE_REQUIRED = "challenge_required"
    AWAITING_INPUT = "awaiting_input"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    DENIED = "denied"
    CANCELLED = "cancelled"


class VerificationMethod(str, enum.Enum):
    TOTP = "totp"
    BACKUP_CODE = "backup_code"
    TRUSTED_DEVICE = "trusted_device"
    NOT_ENROLLED = "not_enrolled"


class DenialReason(str, enum.Enum):
    INVALID_CODE = "invalid_code"
    NO_SECRET_CONFIGURED = "no_secret_configured"
    INVALID_SECRET = "invalid_secret"
    SERVICE_UNAVAILABLE = "service_unavailable"


@dataclass(frozen=True)
class VerificationOutcome:
    state: VerificationState
    method: VerificationMethod | None = None
    reason: DenialReason | None = None
    retryable: bool = False

    @property
    def verified(self) -> bool:
        return self.state == VerificationState.VERIFIED

    @property
    def used_backup_code(self) -> bool:
        return self.method == VerificationMethod.BACKUP_CODE


class VerificationFlow:
    def __init__(
        self,
        store: TwoFactorStore,
        devices: DeviceTrustManager,
        user_id: uuid.UUID,
        fingerprint: str | None,
        *,
        state: VerificationState = VerificationState.UNCHALLENGED,
        method: VerificationMethod | None = None,
    ):
        self.store = store
        self.devices = devices
        self.user_id = user_id
        self.fingerprint = fingerprint
        self.state = VerificationState(state)
        self.method = VerificationMethod(method) if method else None
        self.trail: list[VerificationState] = [self.state]

    def _goto(self, state: VerificationState) -> None:
        self.state = state
        self.trail.append(state)

    def _require(self, *allowed: VerificationState) -> None:
        if self.state not in allowed:
            raise InvalidTransition(f"not allowed while {self.state.value}")

    def _verified(self, method: VerificationMethod) -> VerificationOutcome:
        self.method = method
        self._goto(VerificationState.VERIFIED)
        return VerificationOutcome(state=VerificationState.VERIFIED, method=method)

    def begin(self) -> VerificationOutcome:
        if self.state == VerificationState.VERIFIED:
            return VerificationOutcome(state=VerificationState.VERIFIED, method=self.method)

        self._goto(VerificationState.DEVICE_TRUST_CHECK)
        trusted = False
        if self.fingerprint:
            try:
                trusted = self.devices.is_trusted(self.user_id, self.fingerprint)
            except DeviceTrustError:
                # fail closed: fall through to the enrollment check
                logger.warning("Device trust check failed for user %s; requiring challenge", self.user_id, exc_info=True)
                trusted = False

        if trusted:
            self._goto(VerificationState.TRUSTED_SKIP)
            return self._verified(VerificationMethod.TRUSTED_DEVICE)

        record = self.store.fetch(self.user_id)
        if record is None or not record.is_enabled:
            return self._verified(VerificationMethod.NOT_ENROLLED)

        self._goto(VerificationState.CHALLENGE_REQUIRED)
        self._goto(VerificationState.AWAITING_INPUT)
        return VerificationOutcome(state=VerificationState.AWAITING_INPUT)

    def _deny(self, reason: DenialReason, *, retryable: bool) -> VerificationOutcome:
        self._goto(VerificationState.DENIED)
        if retryable:
            self._goto(VerificationState.AWAITING_INPUT)
        return VerificationOutcome(state=VerificationState.DENIED, reason=reason, retryable=retryable)

    def submit(self, code: str | None) -> VerificationOutcome:
        self._require(VerificationState.AWAITING_INPUT)
        candidate = (code or "").strip()
        if not candidate:
            return self._deny(DenialReason.INVALID_CODE, retryable=True)

        self._goto(VerificationState.VERIFYING)
        try:
            record = self.store.fetch(self.user_id)
            if record is None or not record.is_enabled:
                return self._verified(VerificationMethod.NOT_ENROLLED)

            if self.store.consume_backup_code(self.user_id, normalize_backup_code(candidate)):
                return self._verified(VerificationMethod.BACKUP_CODE)

            secret = self.store.resolve_secret(record)
            if verify_totp(secret, candidate, window=self.store.valid_window, for_time=self.store.clock()):
                return self._verified(VerificationMethod.TOTP)
        except NoSecretConfigured:
            logger.error("2FA enabled for user %s but no secret is stored", self.user_id)
            return self._deny(DenialReason.NO_SECRET_CONFIGURED, retryable=False)
        except InvalidSecret:
            logger.error("Stored TOTP secret for user %s is not valid base32", self.user_id)
            return self._deny(DenialReason.INVALID_SECRET, retryable=False)
        except (EncryptionFailure, SettingsStoreError, BackupCodeConflict) as e:
            logger.error("2FA verification for user %s failed: %s", self.user_id, e.code)
            return self._deny(DenialReason.SERVICE_UNAVAILABLE, retryable=False)

        logger.info("Invalid 2FA code for user %s", self.user_id)
        return self._deny(DenialReason.INVALID_CODE, retryable=True)

    def remember_device(self, device_name: str) -> TrustedDevice:
        self._require(VerificationState.VERIFIED)
        if not self.fingerprint:
            raise DeviceTrustError("device fingerprint is required")
        return self.devices.trust(self.user_id, self.fingerprint, device_name)

    def cancel(self) -> VerificationOutcome:
        self._require(VerificationState.CHALLENGE_REQUIRED, VerificationState.AWAITING_INPUT)
        self._goto(VerificationState.CANCELLED)
        return VerificationOutcome(state=VerificationState.CANCELLED)
