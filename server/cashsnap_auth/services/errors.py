from __future__ import annotations


class TwoFactorError(Exception):
    """Base for every error raised by the 2FA core.

    ``code`` is a stable machine-readable identifier returned to clients;
    ``status_code`` is the HTTP status the API maps the error to.
    """

    code = "two_factor_error"
    status_code = 500

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)


class EncryptionFailure(TwoFactorError):
    """Encryption oracle call failed."""

    code = "encryption_failure"
    status_code = 502


class DecryptionFailure(EncryptionFailure):
    """Encryption oracle could not decrypt the stored envelope."""

    code = "decryption_failure"


class NoSecretConfigured(TwoFactorError):
    """No TOTP secret found for this enrollment."""

    code = "no_secret_configured"
    status_code = 409


class InvalidSecret(TwoFactorError):
    """TOTP secret is not valid base32."""

    code = "invalid_secret"
    status_code = 400


class InvalidCode(TwoFactorError):
    """Verification code is missing."""

    code = "invalid_code"
    status_code = 400


class InvalidVerificationCode(TwoFactorError):
    """Invalid verification code."""

    code = "invalid_verification_code"
    status_code = 400


class TwoFactorNotEnrolled(TwoFactorError):
    """Two-factor authentication is not set up for this user."""

    code = "not_enrolled"
    status_code = 404


class BackupCodeConflict(TwoFactorError):
    """Backup codes changed concurrently; try again."""

    code = "backup_code_conflict"
    status_code = 409


class SettingsStoreError(TwoFactorError):
    """Failed to read or write 2FA settings."""

    code = "settings_store_error"
    status_code = 503


class DeviceTrustError(TwoFactorError):
    """Failed to read or write trusted devices."""

    code = "device_trust_error"
    status_code = 503


class TrustedDeviceNotFound(TwoFactorError):
    """Trusted device not found."""

    code = "device_not_found"
    status_code = 404


class InvalidTransition(TwoFactorError):
    """Verification step is not allowed in the current state."""

    code = "invalid_transition"
    status_code = 409
