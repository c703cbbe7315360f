from datetime import datetime, timezone

import pytest

from cashsnap_auth.models import UserTwoFactor
from cashsnap_auth.services.device_trust import DeviceTrustManager
from cashsnap_auth.services.encryption import AesGcmCipher, LocalEncryptionOracle
from cashsnap_auth.services.errors import DeviceTrustError, EncryptionFailure, InvalidTransition
from cashsnap_auth.services.mfa import totp_at
from cashsnap_auth.services.two_factor import TwoFactorStore
from cashsnap_auth.services.verification import (
    DenialReason,
    VerificationFlow,
    VerificationMethod,
    VerificationState,
)

SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
FP = "f" * 64

S = VerificationState


@pytest.fixture()
def store(db):
    return TwoFactorStore(db, LocalEncryptionOracle(AesGcmCipher("flow-key")), clock=lambda: NOW, valid_window=2)


@pytest.fixture()
def devices(db):
    return DeviceTrustManager(db, current_fingerprint=FP, clock=lambda: NOW, trust_days=30)


@pytest.fixture()
def enrolled(store, user):
    return store.enable(user.id, SECRET, totp_at(SECRET, NOW)).backup_codes


def _flow(store, devices, user, fingerprint=FP):
    return VerificationFlow(store, devices, user.id, fingerprint)


def test_not_enrolled_user_is_never_challenged(store, devices, user):
    flow = _flow(store, devices, user)
    outcome = flow.begin()
    assert outcome.verified
    assert outcome.method == VerificationMethod.NOT_ENROLLED
    assert flow.trail == [S.UNCHALLENGED, S.DEVICE_TRUST_CHECK, S.VERIFIED]


def test_disabled_enrollment_is_not_challenged(store, devices, user, enrolled):
    store.disable(user.id)
    assert _flow(store, devices, user).begin().method == VerificationMethod.NOT_ENROLLED


def test_enrolled_user_is_challenged(store, devices, user, enrolled):
    flow = _flow(store, devices, user)
    outcome = flow.begin()
    assert outcome.state == S.AWAITING_INPUT
    assert not outcome.verified
    assert flow.trail == [S.UNCHALLENGED, S.DEVICE_TRUST_CHECK, S.CHALLENGE_REQUIRED, S.AWAITING_INPUT]


def test_totp_code_verifies(store, devices, user, enrolled):
    flow = _flow(store, devices, user)
    flow.begin()
    outcome = flow.submit(totp_at(SECRET, NOW, 1))
    assert outcome.verified
    assert outcome.method == VerificationMethod.TOTP
    assert not outcome.used_backup_code
    assert flow.trail[-2:] == [S.VERIFYING, S.VERIFIED]


def test_backup_code_verifies_once(store, devices, user, enrolled):
    flow = _flow(store, devices, user)
    flow.begin()
    outcome = flow.submit(enrolled[0].lower())
    assert outcome.verified
    assert outcome.used_backup_code

    again = _flow(store, devices, user)
    again.begin()
    denied = again.submit(enrolled[0])
    assert denied.state == S.DENIED
    assert denied.reason == DenialReason.INVALID_CODE


def test_wrong_code_is_retryable(store, devices, user, enrolled):
    flow = _flow(store, devices, user)
    flow.begin()
    wrong = "000000" if totp_at(SECRET, NOW) != "000000" else "111111"
    outcome = flow.submit(wrong)
    assert outcome.state == S.DENIED
    assert outcome.retryable
    assert flow.state == S.AWAITING_INPUT

    assert flow.submit(totp_at(SECRET, NOW)).verified


def test_empty_code_is_denied_without_lookup(store, devices, user, enrolled):
    flow = _flow(store, devices, user)
    flow.begin()
    outcome = flow.submit("   ")
    assert outcome.reason == DenialReason.INVALID_CODE
    assert outcome.retryable
    assert S.VERIFYING not in flow.trail


def test_enabled_without_secret_is_a_hard_denial(store, devices, user, db):
    db.add(UserTwoFactor(user_id=user.id, is_enabled=True))
    db.commit()

    flow = _flow(store, devices, user)
    flow.begin()
    outcome = flow.submit("123456")
    assert outcome.reason == DenialReason.NO_SECRET_CONFIGURED
    assert not outcome.retryable
    assert flow.state == S.DENIED
    with pytest.raises(InvalidTransition):
        flow.submit("123456")


def test_corrupt_secret_is_a_hard_denial(store, devices, user, db):
    db.add(UserTwoFactor(user_id=user.id, is_enabled=True, secret_key="not*base32"))
    db.commit()

    flow = _flow(store, devices, user)
    flow.begin()
    outcome = flow.submit("123456")
    assert outcome.reason == DenialReason.INVALID_SECRET
    assert not outcome.retryable


def test_oracle_outage_denies(store, devices, user, enrolled, monkeypatch):
    flow = _flow(store, devices, user)
    flow.begin()

    def down(*a, **kw):
        raise EncryptionFailure("oracle down")

    monkeypatch.setattr(store.oracle, "decrypt", down)
    outcome = flow.submit(totp_at(SECRET, NOW))
    assert outcome.reason == DenialReason.SERVICE_UNAVAILABLE
    assert not outcome.verified


def test_trusted_device_skips_challenge(store, devices, user, enrolled):
    devices.trust(user.id, FP, "Chrome on Windows")
    flow = _flow(store, devices, user)
    outcome = flow.begin()
    assert outcome.verified
    assert outcome.method == VerificationMethod.TRUSTED_DEVICE
    assert flow.trail == [S.UNCHALLENGED, S.DEVICE_TRUST_CHECK, S.TRUSTED_SKIP, S.VERIFIED]


def test_trust_lookup_failure_fails_closed(store, devices, user, enrolled, monkeypatch):
    devices.trust(user.id, FP, "Chrome on Windows")

    def broken(*a, **kw):
        raise DeviceTrustError("db down")

    monkeypatch.setattr(devices, "is_trusted", broken)
    outcome = _flow(store, devices, user).begin()
    assert outcome.state == S.AWAITING_INPUT


def test_remember_device_after_verification(store, devices, user, enrolled):
    flow = _flow(store, devices, user)
    flow.begin()
    with pytest.raises(InvalidTransition):
        flow.remember_device("Chrome on Windows")

    flow.submit(totp_at(SECRET, NOW))
    row = flow.remember_device("Chrome on Windows")
    assert row.device_fingerprint == FP
    assert devices.current_device_trusted is True

    assert _flow(store, devices, user).begin().method == VerificationMethod.TRUSTED_DEVICE


def test_remember_device_needs_fingerprint(store, devices, user, enrolled):
    flow = _flow(store, devices, user, fingerprint=None)
    flow.begin()
    flow.submit(totp_at(SECRET, NOW))
    with pytest.raises(DeviceTrustError):
        flow.remember_device("Chrome on Windows")


def test_cancel(store, devices, user, enrolled):
    flow = _flow(store, devices, user)
    flow.begin()
    assert flow.cancel().state == S.CANCELLED
    with pytest.raises(InvalidTransition):
        flow.submit(totp_at(SECRET, NOW))


def test_cannot_submit_before_begin_or_cancel_after_verify(store, devices, user, enrolled):
    flow = _flow(store, devices, user)
    with pytest.raises(InvalidTransition):
        flow.submit("123456")

    flow.begin()
    flow.submit(totp_at(SECRET, NOW))
    with pytest.raises(InvalidTransition):
        flow.cancel()


def test_begin_on_verified_flow_is_a_no_op(store, devices, user, enrolled):
    flow = VerificationFlow(store, devices, user.id, FP, state=S.VERIFIED, method=VerificationMethod.TOTP)
    outcome = flow.begin()
    assert outcome.verified
    assert outcome.method == VerificationMethod.TOTP
    assert flow.trail == [S.VERIFIED]
