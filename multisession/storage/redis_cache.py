from __future__ import annotations

import contextlib
from typing import Iterator, List, Optional

from redis import Redis
from redis.exceptions import RedisError

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
from multisession.service.errors import BackendUnavailableError, InvalidTokenError

logger = get_logger(__name__)


@contextlib.contextmanager
def _redis_op(operation: str) -> Iterator[None]:
    """Wrap redis failures in ``BackendUnavailableError`` with the operation name."""
    try:
        yield
    except RedisError as exc:
        logger.error("redis_command_failed", operation=operation, error=str(exc))
        raise BackendUnavailableError(
            f"{operation}: {exc}", detail={"operation": operation}
        ) from exc


class RedisAuth(SessionAuth):
    """Redis-backed session backend.

    Key layout:
        GST:<token>            hash of claims, TTL from the login channel
        GSBU:<token>           string naming the session index key, same TTL
        GSU:<role>_<user>      set of tokens, no TTL
        GTUserMaxToken         device limit

    The write sequence (hash, expire, index, binding) is pipelined without
    MULTI; a crash mid-sequence leaves index members without a hash, which
    ``count_active_sessions`` prunes.
    """

    backend_name = "redis"

    def __init__(self, client: Redis) -> None:
        self.client = client
        try:
            self.client.ping()
        except RedisError as exc:
            logger.error("redis_ping_failed", error=str(exc))
            raise BackendUnavailableError(f"redis ping failed: {exc}") from exc

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0) -> "RedisAuth":
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    def _persist(self, token: str, claims: CustomClaims) -> None:
        ttl = get_token_expire_seconds(claims.login_type)
        index_key = user_prefix_key(claims.authority_type, claims.id)
        with _redis_op("persist token"):
            pipe = self.client.pipeline(transaction=False)
            pipe.hset(token_key(token), mapping=claims.to_mapping())
            pipe.expire(token_key(token), ttl)
            pipe.sadd(index_key, token)
            pipe.set(bind_user_key(token), index_key, ex=ttl)
            pipe.execute()

    def fetch_claims(self, token: str) -> CustomClaims:
        token = require_token(token)
        with _redis_op("fetch claims"):
            data = self.client.hgetall(token_key(token))
        if not data:
            self._unbind_quietly(token)
            raise InvalidTokenError()
        try:
            claims = CustomClaims.from_mapping(data)
        except (TypeError, ValueError) as exc:
            logger.warning("token_record_malformed", token_prefix=token[:8], error=str(exc))
            raise InvalidTokenError("token record is malformed") from exc
        if not claims.id:
            raise InvalidTokenError("token record is malformed")
        return claims

    def _unbind_quietly(self, token: str) -> None:
        try:
            index_key = self.client.get(bind_user_key(token))
            if index_key is None:
                return
            pipe = self.client.pipeline(transaction=False)
            if is_user_prefix_key(index_key):
                pipe.srem(index_key, token)
            pipe.delete(bind_user_key(token))
            pipe.execute()
            logger.debug("stale_token_unbound", token_prefix=token[:8])
        except RedisError as exc:
            logger.warning("stale_token_unbind_failed", token_prefix=token[:8], error=str(exc))

    def revoke_token(self, token: str) -> None:
        """Log a session out.

        Raises:
            InvalidTokenError: the claims are already gone; treat as revoked
        """
        claims = self.fetch_claims(token)
        with _redis_op("revoke token"):
            pipe = self.client.pipeline(transaction=False)
            pipe.srem(user_prefix_key(claims.authority_type, claims.id), token)
            pipe.delete(bind_user_key(token), token_key(token))
            pipe.execute()
        logger.info(
            "token_revoked",
            backend=self.backend_name,
            user_id=claims.id,
            authority_type=int(claims.authority_type),
        )

    def user_token_expired(self, token: str) -> None:
        token = require_token(token)
        with _redis_op("expire token binding"):
            index_key = self.client.get(bind_user_key(token))
            if index_key is None:
                raise InvalidTokenError("token binding is missing")
            pipe = self.client.pipeline(transaction=False)
            if is_user_prefix_key(index_key):
                pipe.srem(index_key, token)
            pipe.delete(bind_user_key(token))
            pipe.execute()

    def refresh_expiry(self, token: str) -> None:
        claims = self.fetch_claims(token)
        ttl = get_token_expire_seconds(claims.login_type)
        with _redis_op("refresh expiry"):
            pipe = self.client.pipeline(transaction=False)
            pipe.expire(token_key(token), ttl)
            # Rewrite rather than EXPIRE so a lost binding is repaired
            pipe.set(
                bind_user_key(token),
                user_prefix_key(claims.authority_type, claims.id),
                ex=ttl,
            )
            pipe.execute()

    def get_user_tokens(self, authority_type: int, user_id: str) -> List[str]:
        with _redis_op("list user tokens"):
            return sorted(self.client.smembers(user_prefix_key(authority_type, user_id)))

    def count_active_sessions(self, authority_type: int, user_id: str) -> int:
        index_key = user_prefix_key(authority_type, user_id)
        tokens = self.get_user_tokens(authority_type, user_id)
        if not tokens:
            return 0
        with _redis_op("count sessions"):
            pipe = self.client.pipeline(transaction=False)
            for token in tokens:
                pipe.exists(token_key(token))
            alive = pipe.execute()

        stale = [t for t, exists in zip(tokens, alive) if not exists]
        if stale:
            # Count already excludes stale tokens, so a failed prune is harmless
            try:
                pipe = self.client.pipeline(transaction=False)
                pipe.srem(index_key, *stale)
                pipe.delete(*(bind_user_key(t) for t in stale))
                pipe.execute()
                logger.info(
                    "stale_tokens_pruned",
                    backend=self.backend_name,
                    user_id=user_id,
                    authority_type=int(authority_type),
                    pruned=len(stale),
                )
            except RedisError as exc:
                logger.warning(
                    "stale_token_prune_failed",
                    user_id=user_id,
                    authority_type=int(authority_type),
                    error=str(exc),
                )
        return len(tokens) - len(stale)

    def set_device_limit(self, limit: int) -> None:
        limit = validate_device_limit(limit)
        with _redis_op("set device limit"):
            self.client.set(GT_SESSION_USER_MAX_TOKEN_KEY, limit)

    def get_device_limit(self) -> int:
        with _redis_op("get device limit"):
            raw: Optional[str] = self.client.get(GT_SESSION_USER_MAX_TOKEN_KEY)
        if raw is None:
            return DEFAULT_TOKEN_MAX_COUNT
        try:
            return int(raw)
        except ValueError:
            logger.warning("device_limit_malformed", value=raw)
            return DEFAULT_TOKEN_MAX_COUNT

    def clean_user_sessions(self, authority_type: int, user_id: str) -> None:
        index_key = user_prefix_key(authority_type, user_id)
        tokens = self.get_user_tokens(authority_type, user_id)
        with _redis_op("clean user sessions"):
            pipe = self.client.pipeline(transaction=False)
            for token in tokens:
                pipe.delete(bind_user_key(token), token_key(token))
            pipe.delete(index_key)
            pipe.execute()
        logger.info(
            "user_sessions_cleaned",
            backend=self.backend_name,
            user_id=user_id,
            authority_type=int(authority_type),
            revoked=len(tokens),
        )

    def close(self) -> None:
        self.client.close()
