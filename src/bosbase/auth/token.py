"""JWT inspection for tokens issued by the backend.

Learn: the client never holds the signing secret, so it cannot verify a
token. It only reads the payload to decide whether the token is still
worth sending (an expired token would just earn a 401). Signature
verification is the server's job.
"""

import time
from typing import Any

import jwt


class TokenError(Exception):
    """Raised when a token cannot be decoded."""


def decode_token(token: str) -> dict[str, Any]:
    """Decode a JWT payload without verifying its signature.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    if not token:
        raise TokenError("Empty token")
    try:
        payload = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
        )
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")
    if not isinstance(payload, dict):
        raise TokenError("Token payload is not an object")
    return payload


def is_token_expired(token: str, threshold: float = 0) -> bool:
    """True when the token is malformed, has no `exp`, or expires within `threshold` seconds."""
    try:
        payload = decode_token(token)
    except TokenError:
        return True
    exp = payload.get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        return True
    return exp - threshold <= time.time()
