"""Encryption oracle endpoint.

Holds the only copy of the key material; callers exchange plaintext for
ciphertext/nonce pairs and back.
"""
from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..config import settings
from ..schemas import EncryptionOracleRequest
from ..services.encryption import AesGcmCipher
from ..services.errors import EncryptionFailure

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/functions", tags=["encryption"])


@router.post("/crypto-encryption")
def crypto_encryption(payload: EncryptionOracleRequest, request: Request):
    # Closed unless a shared token is configured.
    expected = (settings.encryption_oracle_token or "").strip()
    if not expected:
        logger.warning("Rejected oracle call: ENCRYPTION_ORACLE_TOKEN is not configured")
        return JSONResponse(status_code=401, content={"error": "Oracle token not configured"})
    given = request.headers.get("X-Oracle-Token") or ""
    if not hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8")):
        return JSONResponse(status_code=401, content={"error": "Invalid oracle token"})

    action = (payload.action or "").strip().lower()
    if action not in ("encrypt", "decrypt"):
        return JSONResponse(status_code=400, content={"error": "Invalid action"})

    try:
        cipher = AesGcmCipher()
        if action == "encrypt":
            if payload.plaintext is None:
                return JSONResponse(status_code=400, content={"error": "plaintext is required"})
            env = cipher.encrypt(payload.plaintext)
            return {"encrypted": env.ciphertext, "iv": env.nonce}

        if not payload.encryptedData or not payload.iv:
            return JSONResponse(status_code=400, content={"error": "encryptedData and iv are required"})
        return {"plaintext": cipher.decrypt(payload.encryptedData, payload.iv)}
    except EncryptionFailure as e:
        logger.error("Crypto %s failed: %s", action, e.code)
        return JSONResponse(status_code=500, content={"error": str(e)})
