"""Authentication state — token store and JWT inspection."""

from bosbase.auth.store import AuthStore
from bosbase.auth.token import TokenError, decode_token, is_token_expired

__all__ = ["AuthStore", "TokenError", "decode_token", "is_token_expired"]
