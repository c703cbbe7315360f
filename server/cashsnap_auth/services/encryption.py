from __future__ import annotations

import base64
import binascii
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import settings
from .errors import DecryptionFailure, EncryptionFailure

logger = logging.getLogger(__name__)

NONCE_BYTES = 12  # 96-bit GCM nonce


@dataclass(frozen=True)
class EncryptionEnvelope:
    ciphertext: str
    nonce: str


class EncryptionOracle(Protocol):
    def encrypt(self, plaintext: str) -> EncryptionEnvelope:
        ...

    def decrypt(self, ciphertext: str, nonce: str) -> str:
        ...


def _clean_key(raw: str | None) -> str:
    key = str(raw or "").strip()
    # Be tolerant of accidentally quoted env values, e.g. "<key>".
    if len(key) >= 2 and key[0] == key[-1] and key[0] in {'"', "'"}:
        key = key[1:-1].strip()
    return key


def key_material(secret: str) -> bytes:
    """Derive the 256-bit AES key: pad the configured secret with '0' and cut to 32 bytes."""
    return secret.ljust(32, "0").encode("utf-8")[:32]


class AesGcmCipher:
    """AES-256-GCM with a fresh random nonce per call.

    This is the oracle's own side of the boundary: the key lives here and
    only ciphertext/nonce pairs leave it, both base64 encoded.
    """

    def __init__(self, secret: str | None = None):
        key = _clean_key(secret if secret is not None else settings.crypto_encryption_key)
        if not key:
            raise EncryptionFailure("CRYPTO_ENCRYPTION_KEY not configured")
        self._aes = AESGCM(key_material(key))

    def encrypt(self, plaintext: str) -> EncryptionEnvelope:
        nonce = secrets.token_bytes(NONCE_BYTES)
        ct = self._aes.encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptionEnvelope(
            ciphertext=base64.b64encode(ct).decode("ascii"),
            nonce=base64.b64encode(nonce).decode("ascii"),
        )

    def decrypt(self, ciphertext: str, nonce: str) -> str:
        try:
            ct = base64.b64decode(ciphertext, validate=True)
            iv = base64.b64decode(nonce, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailure("ciphertext or nonce is not valid base64") from e
        if len(iv) != NONCE_BYTES:
            raise DecryptionFailure(f"nonce must be {NONCE_BYTES} bytes")
        try:
            plain = self._aes.decrypt(iv, ct, None)
        except InvalidTag as e:
            raise DecryptionFailure("ciphertext failed authentication") from e
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailure("decrypted payload is not UTF-8") from e


class LocalEncryptionOracle:
    """In-process oracle: same contract as the remote one, no network hop."""

    def __init__(self, cipher: AesGcmCipher | None = None):
        self._cipher = cipher or AesGcmCipher()

    def encrypt(self, plaintext: str) -> EncryptionEnvelope:
        return self._cipher.encrypt(plaintext)

    def decrypt(self, ciphertext: str, nonce: str) -> str:
        return self._cipher.decrypt(ciphertext, nonce)


class HttpEncryptionOracle:
    """Client for the remote encryption oracle.

    Request:  {"action": "encrypt", "plaintext": ...}
              {"action": "decrypt", "encryptedData": ..., "iv": ...}
    Response: {"encrypted": ..., "iv": ...} / {"plaintext": ...} or {"error": ...}

    Holds no key material and caches nothing; every call goes to the service.
    """

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._client = client

    def _post(self, body: dict[str, Any], failure: type[EncryptionFailure]) -> dict[str, Any]:
        headers = {"X-Oracle-Token": self.token} if self.token else {}
        try:
            if self._client is not None:
                r = self._client.post(self.url, json=body, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    r = client.post(self.url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("Encryption oracle unreachable (%s): %s", body.get("action"), e.__class__.__name__)
            raise failure(f"encryption oracle unreachable: {e}") from e

        try:
            data = r.json()
        except ValueError:
            data = None

        if r.status_code >= 400:
            detail = data.get("error") if isinstance(data, dict) else r.text[:300]
            logger.warning("Encryption oracle returned %s for %s", r.status_code, body.get("action"))
            raise failure(f"encryption oracle failed ({r.status_code}): {detail}")
        if not isinstance(data, dict):
            raise failure("encryption oracle returned a non-JSON response")
        if data.get("error"):
            raise failure(f"encryption oracle failed: {data['error']}")
        return data

    def encrypt(self, plaintext: str) -> EncryptionEnvelope:
        data = self._post({"action": "encrypt", "plaintext": plaintext}, EncryptionFailure)
        encrypted, iv = data.get("encrypted"), data.get("iv")
        if not isinstance(encrypted, str) or not isinstance(iv, str) or not encrypted or not iv:
            raise EncryptionFailure("encryption oracle response is missing encrypted/iv")
        return EncryptionEnvelope(ciphertext=encrypted, nonce=iv)

    def decrypt(self, ciphertext: str, nonce: str) -> str:
        data = self._post({"action": "decrypt", "encryptedData": ciphertext, "iv": nonce}, DecryptionFailure)
        plaintext = data.get("plaintext")
        if not isinstance(plaintext, str):
            raise DecryptionFailure("encryption oracle response is missing plaintext")
        return plaintext


def get_oracle() -> EncryptionOracle:
    """Oracle configured for this process (remote when ENCRYPTION_ORACLE_URL is set)."""
    url = (settings.encryption_oracle_url or "").strip()
    if url:
        return HttpEncryptionOracle(
            url,
            token=settings.encryption_oracle_token or None,
            timeout=float(settings.encryption_oracle_timeout_seconds),
        )
    return LocalEncryptionOracle()
