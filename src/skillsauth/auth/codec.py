"""Token codec: opaque secrets, human codes, hashing.

Learn: Everything that turns randomness into a credential lives here.
- device_code: 32 random bytes as 64 hex chars, polled by the CLI
- user_code: 8 chars from an alphabet without look-alikes (0/O, 1/I/L),
  shown as XXXX-XXXX and typed by a human on the verification page
- access token: "sk_" + 64 hex chars, stored only as a SHA-256 hash
- refresh token: "srt_" + 64 hex chars, stored only as a SHA-256 hash
- auth code: 64 hex chars handed to the CLI's localhost callback

Nothing here touches storage.
"""

import base64
import hashlib
import secrets
import string
from typing import Optional
from urllib.parse import urlsplit

USER_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
USER_CODE_LENGTH = 8

ACCESS_TOKEN_PREFIX = "sk_"
REFRESH_TOKEN_PREFIX = "srt_"

# Display prefixes kept in the DB so users can tell tokens apart.
ACCESS_DISPLAY_LEN = 11  # "sk_" + 8
REFRESH_DISPLAY_LEN = 12  # "srt_" + 8

_LOCAL_CALLBACK_HOSTS = ("localhost", "127.0.0.1")

# RFC 7636 section 4.1: verifiers (and plain challenges) use unreserved characters.
PKCE_ALPHABET = frozenset(string.ascii_letters + string.digits + "-._~")
PKCE_MAX_LENGTH = 128


def generate_device_code() -> str:
    return secrets.token_hex(32)


def generate_user_code() -> str:
    chars = "".join(
        secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH)
    )
    return f"{chars[:4]}-{chars[4:]}"


def normalize_user_code(raw: str) -> Optional[str]:
    """Canonicalize user input ("abcd efgh", "ABCD-EFGH") to XXXX-XXXX.

    Returns None when the input can't be a user code at all.
    """
    cleaned = "".join(ch for ch in raw.upper() if ch.isalnum())
    if len(cleaned) != USER_CODE_LENGTH:
        return None
    if any(ch not in USER_CODE_ALPHABET for ch in cleaned):
        return None
    return f"{cleaned[:4]}-{cleaned[4:]}"


def generate_access_token() -> str:
    return ACCESS_TOKEN_PREFIX + secrets.token_hex(32)


def generate_refresh_token() -> str:
    return REFRESH_TOKEN_PREFIX + secrets.token_hex(32)


def generate_auth_code() -> str:
    return secrets.token_hex(32)


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def hash_token(raw: str) -> str:
    """One-way hash used for every stored secret."""
    return hashlib.sha256(raw.encode()).hexdigest()


def hashes_match(raw: str, stored_hash: str) -> bool:
    return secrets.compare_digest(hash_token(raw), stored_hash)


def looks_like_access_token(raw: str) -> bool:
    return raw.startswith(ACCESS_TOKEN_PREFIX)


def looks_like_refresh_token(raw: str) -> bool:
    return raw.startswith(REFRESH_TOKEN_PREFIX)


def is_local_callback(url: str) -> bool:
    """Only http://localhost|127.0.0.1[:port]/callback is accepted."""
    try:
        parts = urlsplit(url)
        parts.port  # raises ValueError on a malformed port
    except ValueError:
        return False
    return (
        parts.scheme == "http"
        and parts.hostname in _LOCAL_CALLBACK_HOSTS
        and parts.path == "/callback"
    )


def s256_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


def is_pkce_value(value: str) -> bool:
    return 0 < len(value) <= PKCE_MAX_LENGTH and all(c in PKCE_ALPHABET for c in value)


def verify_code_challenge(verifier: str, challenge: str, method: str) -> bool:
    """PKCE check (RFC 7636) for the S256 and plain methods."""
    if not is_pkce_value(verifier) or not is_pkce_value(challenge):
        return False
    if method == "plain":
        return secrets.compare_digest(verifier.encode(), challenge.encode())
    if method == "S256":
        return secrets.compare_digest(s256_challenge(verifier).encode(), challenge.encode())
    return False
