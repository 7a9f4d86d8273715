"""Key namespace shared by the stateful backends.

Tokens are base64url segments joined by ``.`` so they never contain ``:``
or ``_``; the prefixes below cannot collide with token text.
"""

from __future__ import annotations

GT_SESSION_TOKEN_PREFIX = "GST:"  # token -> claims record
GT_SESSION_BIND_USER_PREFIX = "GSBU:"  # token -> session index key
GT_SESSION_USER_PREFIX = "GSU:"  # (role, user) -> set of tokens
GT_SESSION_USER_MAX_TOKEN_KEY = "GTUserMaxToken"  # device limit


def token_key(token: str) -> str:
    return GT_SESSION_TOKEN_PREFIX + token


def bind_user_key(token: str) -> str:
    return GT_SESSION_BIND_USER_PREFIX + token


def user_prefix_key(authority_type: int, user_id: str) -> str:
    return f"{GT_SESSION_USER_PREFIX}{int(authority_type)}_{user_id}"


def is_user_prefix_key(key: str) -> bool:
    return key.startswith(GT_SESSION_USER_PREFIX)
