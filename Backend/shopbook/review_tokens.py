"""
Signed review tokens.

A review link carries "<raw>.<signature>": raw is 32 random bytes in
unpadded base64url, signature is HMAC-SHA256(secret, raw) in unpadded
base64url. The database only ever sees sha256(raw) in hex, so a leaked table
cannot be turned back into working links and a forged link is rejected
before any lookup.
"""

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional

REVIEW_TOKEN_BYTES = 32


@dataclass(frozen=True)
class SignedReviewToken:
    raw_token: str
    signed_token: str
    token_hash: str


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _sign(raw_token: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_token.encode("utf-8"), hashlib.sha256).digest()
    return _b64url(digest)


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def create_signed_review_token(secret: str) -> SignedReviewToken:
    raw_token = _b64url(secrets.token_bytes(REVIEW_TOKEN_BYTES))
    return SignedReviewToken(
        raw_token=raw_token,
        signed_token=f"{raw_token}.{_sign(raw_token, secret)}",
        token_hash=hash_token(raw_token),
    )


def verify_signed_review_token(signed_token: str, secret: str) -> Optional[str]:
    """
    Return the raw token when the signature checks out, else None.

    Exactly two non-empty dot-separated segments are accepted. The signature
    comparison is constant-time.
    """
    if not signed_token:
        return None
    parts = signed_token.split(".")
    if len(parts) != 2:
        return None
    raw_token, signature = parts
    if not raw_token or not signature:
        return None

    expected = _sign(raw_token, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
        return None
    return raw_token


def hash_opaque_value(value: Optional[str]) -> Optional[str]:
    """sha256 hex of a trimmed value (IP address, user agent), None when blank."""
    normalized = (value or "").strip()
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()
