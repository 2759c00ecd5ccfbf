"""Token codec tests: shapes of generated secrets and the pure helpers."""

import re

import pytest

from skillsauth.auth.codec import (
    USER_CODE_ALPHABET,
    generate_access_token,
    generate_device_code,
    generate_refresh_token,
    generate_user_code,
    hash_token,
    hashes_match,
    is_local_callback,
    is_pkce_value,
    normalize_user_code,
    s256_challenge,
    verify_code_challenge,
)


def test_device_code_is_64_hex_chars():
    code = generate_device_code()
    assert re.fullmatch(r"[0-9a-f]{64}", code)
    assert generate_device_code() != code


def test_user_code_format_and_alphabet():
    for _ in range(50):
        code = generate_user_code()
        assert re.fullmatch(r"[A-Z0-9]{4}-[A-Z0-9]{4}", code)
        assert all(ch in USER_CODE_ALPHABET for ch in code.replace("-", ""))


def test_user_code_alphabet_has_no_lookalikes():
    for ch in "01ILO":
        assert ch not in USER_CODE_ALPHABET


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("ABCD-EFGH", "ABCD-EFGH"),
        ("abcd-efgh", "ABCD-EFGH"),
        ("abcdefgh", "ABCD-EFGH"),
        (" abcd efgh ", "ABCD-EFGH"),
        ("ABCD-EFG", None),
        ("ABCD-EFGHJ", None),
        ("ABCD-EFG0", None),  # 0 is not in the alphabet
    ],
)
def test_normalize_user_code(raw, expected):
    assert normalize_user_code(raw) == expected


def test_token_prefixes():
    assert generate_access_token().startswith("sk_")
    assert generate_refresh_token().startswith("srt_")
    assert len(generate_access_token()) == 3 + 64


def test_hash_is_one_way_and_stable():
    raw = generate_access_token()
    digest = hash_token(raw)
    assert digest == hash_token(raw)
    assert raw not in digest
    assert len(digest) == 64
    assert hashes_match(raw, digest)
    assert not hashes_match(raw + "x", digest)


@pytest.mark.parametrize(
    "url, ok",
    [
        ("http://localhost:8976/callback", True),
        ("http://127.0.0.1:50000/callback", True),
        ("http://localhost/callback", True),
        ("https://localhost:8976/callback", False),
        ("http://evil.example.com/callback", False),
        ("http://localhost.evil.com/callback", False),
        ("http://localhost:8976/other", False),
        ("http://localhost:notaport/callback", False),
        ("not a url", False),
    ],
)
def test_is_local_callback(url, ok):
    assert is_local_callback(url) is ok


def test_pkce_s256_known_vector():
    # RFC 7636 appendix B
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    challenge = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
    assert s256_challenge(verifier) == challenge
    assert verify_code_challenge(verifier, challenge, "S256")
    assert not verify_code_challenge("wrong", challenge, "S256")


def test_pkce_plain_and_unknown_method():
    assert verify_code_challenge("abc", "abc", "plain")
    assert not verify_code_challenge("abc", "abd", "plain")
    assert not verify_code_challenge("abc", "abc", "S512")


@pytest.mark.parametrize("verifier, challenge", [("café", "abc"), ("abc", "café"), ("café", "café")])
def test_pkce_plain_non_ascii_is_a_mismatch(verifier, challenge):
    assert verify_code_challenge(verifier, challenge, "plain") is False


def test_pkce_s256_non_ascii_verifier():
    assert verify_code_challenge("ключ" * 11, s256_challenge("v" * 50), "S256") is False


@pytest.mark.parametrize(
    "value, ok",
    [
        ("abc", True),
        ("A-Z.a_z~09", True),
        ("x" * 128, True),
        ("x" * 129, False),
        ("", False),
        ("café", False),
        ("has space", False),
        ("plus+slash/", False),
    ],
)
def test_is_pkce_value(value, ok):
    assert is_pkce_value(value) is ok
