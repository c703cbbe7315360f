from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from cashsnap_auth.services import mfa
from cashsnap_auth.services.errors import InvalidCode, InvalidSecret

# RFC 6238 appendix B seed ("12345678901234567890") in base32.
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
T0 = datetime.fromtimestamp(1111111109, tz=timezone.utc)


def test_totp_matches_rfc_6238_vectors():
    assert mfa.totp_at(RFC_SECRET, datetime.fromtimestamp(59, tz=timezone.utc)) == "287082"
    assert mfa.totp_at(RFC_SECRET, T0) == "081804"


def test_verify_accepts_codes_within_two_steps():
    for offset in range(-2, 3):
        code = mfa.totp_at(RFC_SECRET, T0, offset)
        assert mfa.verify_totp(RFC_SECRET, code, window=2, for_time=T0), offset


def test_verify_rejects_codes_three_steps_away():
    for offset in (-3, 3):
        code = mfa.totp_at(RFC_SECRET, T0, offset)
        window_codes = {mfa.totp_at(RFC_SECRET, T0, o) for o in range(-2, 3)}
        if code in window_codes:
            pytest.skip("code collision inside the window")
        assert not mfa.verify_totp(RFC_SECRET, code, window=2, for_time=T0)


def test_verify_tolerates_spaces_and_lowercase_secret():
    code = mfa.totp_at(RFC_SECRET, T0)
    spaced = f"{code[:3]} {code[3:]}"
    assert mfa.verify_totp(RFC_SECRET.lower(), spaced, for_time=T0)


def test_verify_empty_code_raises():
    with pytest.raises(InvalidCode):
        mfa.verify_totp(RFC_SECRET, "  ", for_time=T0)


@pytest.mark.parametrize("secret", ["", "   ", "not*base32!", "1890"])
def test_invalid_secret_raises(secret):
    with pytest.raises(InvalidSecret):
        mfa.verify_totp(secret, "123456", for_time=T0)


def test_generate_secret_shape_and_uri():
    prov = mfa.generate_secret("alice@example.com", "CashSnap Finance")
    assert len(prov.secret) == mfa.SECRET_LENGTH
    assert set(prov.secret) <= set(mfa.B32_ALPHABET)

    uri = urlparse(prov.provisioning_uri)
    assert uri.scheme == "otpauth"
    assert uri.netloc == "totp"
    assert uri.path == "/CashSnap%20Finance:alice@example.com"
    q = parse_qs(uri.query)
    assert q["secret"] == [prov.secret]
    assert q["issuer"] == ["CashSnap Finance"]
    assert q["algorithm"] == ["SHA1"]
    assert q["digits"] == ["6"]
    assert q["period"] == ["30"]


def test_generate_secret_uses_injected_choice():
    prov = mfa.generate_secret("bob@example.com", "CashSnap Finance", choice=lambda seq: seq[0])
    assert prov.secret == "A" * mfa.SECRET_LENGTH


def test_secrets_are_not_repeated():
    assert len({mfa.new_totp_secret() for _ in range(50)}) == 50


def test_provisioning_image_is_png_data_url():
    url = mfa.render_provisioning_image(mfa.provisioning_uri(RFC_SECRET, "alice@example.com", "CashSnap Finance"))
    assert url.startswith("data:image/png;base64,")


def test_generate_backup_codes_shape():
    codes = mfa.generate_backup_codes()
    assert len(codes) == 8
    for c in codes:
        assert len(c) == mfa.BACKUP_CODE_LENGTH
        assert set(c) <= set(mfa.BACKUP_CODE_ALPHABET)


def test_consume_backup_code_is_case_insensitive_and_single_use():
    codes = ["ABCD1234", "ZZZZ9999"]
    first = mfa.consume_backup_code(codes, " abcd1234 ")
    assert first.matched
    assert first.remaining == ["ZZZZ9999"]

    again = mfa.consume_backup_code(first.remaining, "ABCD1234")
    assert not again.matched
    assert again.remaining == ["ZZZZ9999"]


def test_consume_backup_code_only_removes_one_duplicate():
    result = mfa.consume_backup_code(["AAAA1111", "AAAA1111"], "AAAA1111")
    assert result.matched
    assert result.remaining == ["AAAA1111"]


def test_consume_backup_code_empty_candidate():
    result = mfa.consume_backup_code(["AAAA1111"], "")
    assert not result.matched
    assert result.remaining == ["AAAA1111"]


def test_window_counts_thirty_second_steps():
    # T0 is the last second of its step; one second later is the next step.
    code = mfa.totp_at(RFC_SECRET, T0)
    later = T0 + timedelta(seconds=1)
    assert not mfa.verify_totp(RFC_SECRET, code, window=0, for_time=later)
    assert mfa.verify_totp(RFC_SECRET, code, window=1, for_time=later)
