"""RedisAuth specifics: key layout, native TTLs and failure wrapping."""

from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import make_claims
from multisession.claims import AuthorityType, LoginType
from multisession.keys import GT_SESSION_USER_MAX_TOKEN_KEY, bind_user_key, token_key
from multisession.service.errors import BackendUnavailableError, InvalidTokenError
from multisession.storage.redis_cache import RedisAuth

WEB_TTL = 4 * 60 * 60


class TestKeyLayout:
    def test_claims_hash_fields(self, redis_auth, redis_client):
        token, _ = redis_auth.generate_token(make_claims(authority_ids=["a", "b"]))

        record = redis_client.hgetall(token_key(token))

        assert record["id"] == "42"
        assert record["authority_id"] == "a-b"
        assert record["authority_type"] == "1"
        assert record["login_type"] == "0"
        assert "creation_data" in record
        assert record["expires_in"] == str(WEB_TTL * 1000)

    def test_index_set_and_string_binding(self, redis_auth, redis_client):
        token, _ = redis_auth.generate_token(make_claims())

        assert redis_client.smembers("GSU:1_42") == {token}
        assert redis_client.get(bind_user_key(token)) == "GSU:1_42"
        assert redis_client.ttl("GSU:1_42") == -1

    def test_record_and_binding_carry_channel_ttl(self, redis_auth, redis_client):
        token, _ = redis_auth.generate_token(make_claims(login_type=LoginType.APP))

        app_ttl = 7 * 24 * 60 * 60
        assert 0 < redis_client.ttl(token_key(token)) <= app_ttl
        assert 0 < redis_client.ttl(bind_user_key(token)) <= app_ttl

    def test_refresh_restores_ttl(self, redis_auth, redis_client):
        token, _ = redis_auth.generate_token(make_claims())
        redis_client.expire(token_key(token), 5)
        redis_client.delete(bind_user_key(token))

        redis_auth.refresh_expiry(token)

        assert redis_client.ttl(token_key(token)) > 5
        assert redis_client.get(bind_user_key(token)) == "GSU:1_42"

    def test_device_limit_key(self, redis_auth, redis_client):
        redis_auth.set_device_limit(6)
        assert redis_client.get(GT_SESSION_USER_MAX_TOKEN_KEY) == "6"
        assert redis_auth.get_device_limit() == 6

    def test_malformed_device_limit_reads_default(self, redis_auth, redis_client):
        redis_client.set(GT_SESSION_USER_MAX_TOKEN_KEY, "lots")
        assert redis_auth.get_device_limit() == 10


class TestSharedState:
    def test_two_engines_share_state_through_store(self, redis_client):
        first = RedisAuth(redis_client)
        second = RedisAuth(redis_client)

        token, _ = first.generate_token(make_claims())

        assert second.fetch_claims(token).id == "42"
        assert second.count_active_sessions(AuthorityType.ADMIN, "42") == 1


class TestMalformedRecords:
    def test_non_integer_field_is_invalid_token(self, redis_auth, redis_client):
        token, _ = redis_auth.generate_token(make_claims())
        redis_client.hset(token_key(token), "tenancy_id", "abc")

        with pytest.raises(InvalidTokenError) as excinfo:
            redis_auth.fetch_claims(token)
        assert "malformed" in excinfo.value.message

    def test_record_without_id_is_invalid_token(self, redis_auth, redis_client):
        redis_client.hset(token_key("orphan"), mapping={"username": "x"})

        with pytest.raises(InvalidTokenError):
            redis_auth.fetch_claims("orphan")


class TestFailures:
    def test_ping_failure_is_backend_unavailable(self):
        client = MagicMock()
        client.ping.side_effect = RedisConnectionError("refused")

        with pytest.raises(BackendUnavailableError):
            RedisAuth(client)

    def test_command_failure_is_wrapped_with_operation(self, redis_auth):
        with patch.object(
            redis_auth.client, "hgetall", side_effect=RedisConnectionError("gone")
        ):
            with pytest.raises(BackendUnavailableError) as excinfo:
                redis_auth.fetch_claims("some-token")

        assert excinfo.value.status_code == 503
        assert excinfo.value.detail == {"operation": "fetch claims"}
        assert "fetch claims" in excinfo.value.message

    def test_from_url_uses_decoded_responses(self):
        fake_client = MagicMock()
        with patch("multisession.storage.redis_cache.Redis.from_url", return_value=fake_client) as from_url:
            auth = RedisAuth.from_url("redis://localhost:6379/3", socket_timeout=2.0)

        assert auth.client is fake_client
        from_url.assert_called_once_with(
            "redis://localhost:6379/3",
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
        fake_client.ping.assert_called_once()

    def test_close_closes_client(self):
        client = MagicMock()
        RedisAuth(client).close()
        client.close.assert_called_once()
