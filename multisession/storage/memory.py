from __future__ import annotations

from dataclasses import replace
from typing import Any, List, Optional, Tuple

from multisession.claims import CustomClaims, get_token_expire_seconds
from multisession.config import DEFAULT_TOKEN_MAX_COUNT
from multisession.keys import (
    GT_SESSION_USER_MAX_TOKEN_KEY,
    bind_user_key,
    is_user_prefix_key,
    token_key,
    user_prefix_key,
)
from multisession.logging import get_logger
from multisession.service.auth import SessionAuth, require_token, validate_device_limit
from multisession.service.errors import InvalidTokenError
from multisession.storage.expiring import NO_EXPIRATION, ExpiringStore, shared_store

logger = get_logger(__name__)


def _with_token(token: str):
    def _apply(current: Optional[Tuple[str, ...]], found: bool) -> Tuple[str, ...]:
        tokens = tuple(current or ()) if found else ()
        if token in tokens:
            return tokens
        return tokens + (token,)

    return _apply


def _without_token(token: str):
    def _apply(current: Optional[Tuple[str, ...]], found: bool) -> Optional[Tuple[str, ...]]:
        if not found:
            return None
        tokens = tuple(t for t in current or () if t != token)
        return tokens or None

    return _apply


class LocalAuth(SessionAuth):
    """In-process session backend over an ``ExpiringStore``.

    Instances built without an explicit store share the process-wide one,
    so every ``LocalAuth`` in a process observes the same sessions and the
    same device limit. Session index entries never expire on their own;
    dead members are pruned when the index is counted.

    Steps of one operation are not atomic as a whole: two concurrent
    ``generate_token`` calls for the same user can both pass the limit check.
    """

    backend_name = "local"

    def __init__(self, store: Optional[ExpiringStore] = None) -> None:
        self.store = store if store is not None else shared_store()

    def _persist(self, token: str, claims: CustomClaims) -> None:
        ttl = get_token_expire_seconds(claims.login_type)
        index_key = user_prefix_key(claims.authority_type, claims.id)
        # Store a copy so later mutation of the caller's object is not visible
        self.store.set(token_key(token), replace(claims), ttl)
        self.store.update(index_key, _with_token(token), NO_EXPIRATION)
        self.store.set(bind_user_key(token), index_key, ttl)

    def fetch_claims(self, token: str) -> CustomClaims:
        token = require_token(token)
        value, found = self.store.get(token_key(token))
        if not found:
            self._unbind_quietly(token)
            raise InvalidTokenError()
        if not isinstance(value, CustomClaims) or not value.id:
            logger.warning("token_record_malformed", token_prefix=token[:8])
            raise InvalidTokenError("token record is malformed")
        return replace(value)

    def _unbind_quietly(self, token: str) -> None:
        index_key, found = self.store.get(bind_user_key(token))
        if not found:
            return
        if is_user_prefix_key(index_key):
            self.store.update(index_key, _without_token(token), NO_EXPIRATION)
        self.store.delete(bind_user_key(token))
        logger.debug("stale_token_unbound", token_prefix=token[:8])

    def revoke_token(self, token: str) -> None:
        """Log a session out.

        Raises:
            InvalidTokenError: the claims are already gone; treat as revoked
        """
        claims = self.fetch_claims(token)
        index_key = user_prefix_key(claims.authority_type, claims.id)
        self.store.update(index_key, _without_token(token), NO_EXPIRATION)
        self._delete_token(token)
        logger.info(
            "token_revoked",
            backend=self.backend_name,
            user_id=claims.id,
            authority_type=int(claims.authority_type),
        )

    def _delete_token(self, token: str) -> None:
        self.store.delete(bind_user_key(token))
        self.store.delete(token_key(token))

    def user_token_expired(self, token: str) -> None:
        token = require_token(token)
        index_key, found = self.store.get(bind_user_key(token))
        if not found:
            raise InvalidTokenError("token binding is missing")
        if is_user_prefix_key(index_key):
            self.store.update(index_key, _without_token(token), NO_EXPIRATION)
        self.store.delete(bind_user_key(token))

    def refresh_expiry(self, token: str) -> None:
        claims = self.fetch_claims(token)
        ttl = get_token_expire_seconds(claims.login_type)
        self.store.touch(token_key(token), ttl)
        # Rewrite rather than touch so a lost binding is repaired
        self.store.set(
            bind_user_key(token), user_prefix_key(claims.authority_type, claims.id), ttl
        )

    def get_user_tokens(self, authority_type: int, user_id: str) -> List[str]:
        tokens, found = self.store.get(user_prefix_key(authority_type, user_id))
        if not found or not tokens:
            return []
        return list(tokens)

    def count_active_sessions(self, authority_type: int, user_id: str) -> int:
        index_key = user_prefix_key(authority_type, user_id)
        pruned: List[str] = []

        def _prune(current: Any, found: bool) -> Optional[Tuple[str, ...]]:
            if not found or not current:
                return None
            live = []
            for token in current:
                if self.store.contains(token_key(token)):
                    live.append(token)
                else:
                    pruned.append(token)
            return tuple(live) or None

        live = self.store.update(index_key, _prune, NO_EXPIRATION)
        for token in pruned:
            self.store.delete(bind_user_key(token))
        if pruned:
            logger.info(
                "stale_tokens_pruned",
                backend=self.backend_name,
                user_id=user_id,
                authority_type=int(authority_type),
                pruned=len(pruned),
            )
        return len(live or ())

    def set_device_limit(self, limit: int) -> None:
        self.store.set(GT_SESSION_USER_MAX_TOKEN_KEY, validate_device_limit(limit), NO_EXPIRATION)

    def get_device_limit(self) -> int:
        value, found = self.store.get(GT_SESSION_USER_MAX_TOKEN_KEY)
        if not found:
            return DEFAULT_TOKEN_MAX_COUNT
        return int(value)

    def clean_user_sessions(self, authority_type: int, user_id: str) -> None:
        index_key = user_prefix_key(authority_type, user_id)
        tokens = self.get_user_tokens(authority_type, user_id)
        for token in tokens:
            self._delete_token(token)
        self.store.delete(index_key)
        logger.info(
            "user_sessions_cleaned",
            backend=self.backend_name,
            user_id=user_id,
            authority_type=int(authority_type),
            revoked=len(tokens),
        )
