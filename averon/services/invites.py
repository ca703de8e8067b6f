import hashlib
import re
import secrets

INVITE_TOKEN_PREFIX = "avr_inv_"  # required format

# 32 random bytes -> 43 url-safe base64 chars (no padding)
INVITE_TOKEN_BYTES = 32
_TOKEN_BODY = re.compile(r"^[A-Za-z0-9_-]{43}$")

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")


def generate_invite_token() -> str:
    # Opaque one-time token, 256 bits of entropy
    return INVITE_TOKEN_PREFIX + secrets.token_urlsafe(INVITE_TOKEN_BYTES)


def hash_invite_token(raw_token: str) -> str:
    # SHA-256 hex digest (64 chars)
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def is_well_formed_token(raw_token: str) -> bool:
    token = raw_token or ""
    if not token.startswith(INVITE_TOKEN_PREFIX):
        return False
    return bool(_TOKEN_BODY.match(token[len(INVITE_TOKEN_PREFIX):]))


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_lexically_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(normalize_email(email)))


def build_invite_url(base_url: str, raw_token: str) -> str:
    return f"{base_url.rstrip('/')}/invite/{raw_token}"
