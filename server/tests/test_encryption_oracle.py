import base64
import importlib
import sys

import httpx
import pytest

from cashsnap_auth.services.encryption import (
    AesGcmCipher,
    EncryptionEnvelope,
    HttpEncryptionOracle,
    LocalEncryptionOracle,
    key_material,
)
from cashsnap_auth.services.errors import DecryptionFailure, EncryptionFailure


def _reload_app_modules():
    for k in list(sys.modules.keys()):
        if k == "cashsnap_auth" or k.startswith("cashsnap_auth."):
            sys.modules.pop(k, None)


def _oracle_app(monkeypatch, token="oracle-token"):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("CRYPTO_ENCRYPTION_KEY", "oracle-side-key")
    monkeypatch.setenv("ENCRYPTION_ORACLE_TOKEN", token)
    monkeypatch.setenv("BOOTSTRAP_PASSWORD", "")
    _reload_app_modules()
    app_factory = importlib.import_module("cashsnap_auth.app_factory")
    return app_factory.create_app()


def test_key_material_pads_and_truncates():
    assert key_material("abc") == b"abc" + b"0" * 29
    assert key_material("x" * 40) == b"x" * 32


def test_round_trip_and_fresh_nonces():
    cipher = AesGcmCipher("k1")
    a = cipher.encrypt("JBSWY3DPEHPK3PXP")
    b = cipher.encrypt("JBSWY3DPEHPK3PXP")
    assert a.nonce != b.nonce
    assert a.ciphertext != b.ciphertext
    assert len(base64.b64decode(a.nonce)) == 12
    assert cipher.decrypt(a.ciphertext, a.nonce) == "JBSWY3DPEHPK3PXP"


def test_quoted_key_is_accepted():
    env = AesGcmCipher('"k1"').encrypt("hello")
    assert AesGcmCipher("k1").decrypt(env.ciphertext, env.nonce) == "hello"


def test_missing_key_fails():
    with pytest.raises(EncryptionFailure, match="CRYPTO_ENCRYPTION_KEY"):
        AesGcmCipher("")


def test_tampered_ciphertext_fails_authentication():
    cipher = AesGcmCipher("k1")
    env = cipher.encrypt("secret")
    raw = bytearray(base64.b64decode(env.ciphertext))
    raw[0] ^= 0x01
    with pytest.raises(DecryptionFailure):
        cipher.decrypt(base64.b64encode(bytes(raw)).decode(), env.nonce)


def test_wrong_key_fails():
    env = AesGcmCipher("k1").encrypt("secret")
    with pytest.raises(DecryptionFailure):
        AesGcmCipher("k2").decrypt(env.ciphertext, env.nonce)


@pytest.mark.parametrize(
    "ciphertext,nonce",
    [("%%%", "AAAAAAAAAAAAAAAA"), ("AAAA", base64.b64encode(b"short").decode())],
)
def test_malformed_envelope_fails(ciphertext, nonce):
    with pytest.raises(DecryptionFailure):
        AesGcmCipher("k1").decrypt(ciphertext, nonce)


def test_local_oracle_delegates_to_cipher():
    oracle = LocalEncryptionOracle(AesGcmCipher("k1"))
    env = oracle.encrypt("payload")
    assert isinstance(env, EncryptionEnvelope)
    assert oracle.decrypt(env.ciphertext, env.nonce) == "payload"


def test_http_oracle_round_trip_against_endpoint(monkeypatch):
    app = _oracle_app(monkeypatch)

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        oracle = HttpEncryptionOracle("/functions/crypto-encryption", token="oracle-token", client=client)
        env = oracle.encrypt('["AAAA1111","BBBB2222"]')
        assert oracle.decrypt(env.ciphertext, env.nonce) == '["AAAA1111","BBBB2222"]'

        # Only the oracle holds the key.
        with pytest.raises(DecryptionFailure):
            AesGcmCipher("some-other-key").decrypt(env.ciphertext, env.nonce)


def test_endpoint_rejects_unknown_action_and_missing_fields(monkeypatch):
    app = _oracle_app(monkeypatch)

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        client.headers["X-Oracle-Token"] = "oracle-token"
        r = client.post("/functions/crypto-encryption", json={"action": "rotate"})
        assert r.status_code == 400
        assert r.json() == {"error": "Invalid action"}

        r = client.post("/functions/crypto-encryption", json={"action": "decrypt", "iv": "AAAA"})
        assert r.status_code == 400

        r = client.post(
            "/functions/crypto-encryption",
            json={"action": "decrypt", "encryptedData": "AAAA", "iv": base64.b64encode(b"\0" * 12).decode()},
        )
        assert r.status_code == 500
        assert "error" in r.json()


def test_endpoint_requires_token_when_configured(monkeypatch):
    app = _oracle_app(monkeypatch, token="s3cret")

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        r = client.post("/functions/crypto-encryption", json={"action": "encrypt", "plaintext": "x"})
        assert r.status_code == 401

        oracle = HttpEncryptionOracle("/functions/crypto-encryption", token="s3cret", client=client)
        env = oracle.encrypt("x")
        assert oracle.decrypt(env.ciphertext, env.nonce) == "x"

        with pytest.raises(EncryptionFailure):
            HttpEncryptionOracle("/functions/crypto-encryption", token="wrong", client=client).encrypt("x")


def _mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler), base_url="http://oracle.test")


def test_http_oracle_sends_documented_payload():
    seen = []

    def handler(request: httpx.Request):
        import json

        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"encrypted": "Y3Q=", "iv": "bm9uY2U="})

    env = HttpEncryptionOracle("http://oracle.test/fn", client=_mock_client(handler)).encrypt("hello")
    assert env == EncryptionEnvelope(ciphertext="Y3Q=", nonce="bm9uY2U=")
    assert seen == [{"action": "encrypt", "plaintext": "hello"}]


def test_http_oracle_maps_transport_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    oracle = HttpEncryptionOracle("http://oracle.test/fn", client=_mock_client(handler))
    with pytest.raises(EncryptionFailure, match="unreachable"):
        oracle.encrypt("x")
    with pytest.raises(DecryptionFailure):
        oracle.decrypt("a", "b")


def test_http_oracle_maps_error_responses():
    oracle = HttpEncryptionOracle(
        "http://oracle.test/fn",
        client=_mock_client(lambda request: httpx.Response(500, json={"error": "boom"})),
    )
    with pytest.raises(EncryptionFailure, match="boom"):
        oracle.encrypt("x")

    oracle = HttpEncryptionOracle(
        "http://oracle.test/fn",
        client=_mock_client(lambda request: httpx.Response(200, json={"encrypted": "only"})),
    )
    with pytest.raises(EncryptionFailure, match="missing"):
        oracle.encrypt("x")

    oracle = HttpEncryptionOracle(
        "http://oracle.test/fn",
        client=_mock_client(lambda request: httpx.Response(200, text="<html>")),
    )
    with pytest.raises(DecryptionFailure, match="non-JSON"):
        oracle.decrypt("a", "b")


def test_endpoint_is_closed_without_configured_token(monkeypatch):
    app = _oracle_app(monkeypatch, token="")
    env = AesGcmCipher("oracle-side-key").encrypt("JBSWY3DPEHPK3PXP")

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        r = client.post(
            "/functions/crypto-encryption",
            json={"action": "decrypt", "encryptedData": env.ciphertext, "iv": env.nonce},
        )
        assert r.status_code == 401
        assert "plaintext" not in r.json()

        r = client.post(
            "/functions/crypto-encryption",
            json={"action": "decrypt", "encryptedData": env.ciphertext, "iv": env.nonce},
            headers={"X-Oracle-Token": ""},
        )
        assert r.status_code == 401

        r = client.post("/functions/crypto-encryption", json={"action": "encrypt", "plaintext": "x"})
        assert r.status_code == 401
