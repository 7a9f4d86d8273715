"""Behaviour shared by the stateful backends.

Every test here runs against both LocalAuth and RedisAuth (fakeredis) so the
two implementations stay observably identical.
"""

import pytest

from conftest import make_claims
from multisession.claims import AuthorityType, LoginType, MultiClaims
from multisession.keys import token_key
from multisession.service.errors import (
    ClaimsValidationError,
    EmptyTokenError,
    InvalidTokenError,
    OverDeviceLimitError,
)
from multisession.storage.memory import LocalAuth


def drop_record(auth, token):
    """Remove a claims record behind the backend's back."""
    if isinstance(auth, LocalAuth):
        auth.store.delete(token_key(token))
    else:
        auth.client.delete(token_key(token))


class TestRoundTrip:
    def test_fetch_returns_generated_claims(self, session_auth):
        claims = make_claims(authority_ids=["a", "b"])

        token, expires_in = session_auth.generate_token(claims)

        assert expires_in == claims.expires_in
        assert session_auth.fetch_claims(token) == claims

    def test_fetch_returns_copy(self, session_auth):
        claims = make_claims()
        token, _ = session_auth.generate_token(claims)

        fetched = session_auth.fetch_claims(token)
        fetched.username = "changed"

        assert session_auth.fetch_claims(token).username == "alice"

    def test_multi_claims_are_accepted(self, session_auth):
        claims = MultiClaims.new("9", authority_ids=["r"], authority_type=AuthorityType.GENERAL)

        token, expires_in = session_auth.generate_token(claims)

        fetched = session_auth.fetch_claims(token)
        assert fetched.id == "9"
        assert fetched.authority_ids == ["r"]
        assert 0 < expires_in <= 4 * 60 * 60 * 1000

    def test_unknown_token_is_invalid(self, session_auth):
        with pytest.raises(InvalidTokenError):
            session_auth.fetch_claims("not-a-token")

    def test_empty_token_is_rejected(self, session_auth):
        with pytest.raises(EmptyTokenError):
            session_auth.fetch_claims("")
        with pytest.raises(EmptyTokenError):
            session_auth.revoke_token("")

    def test_invalid_claims_are_not_persisted(self, session_auth):
        claims = make_claims(user_id="")

        with pytest.raises(ClaimsValidationError):
            session_auth.generate_token(claims)

        assert session_auth.count_active_sessions(AuthorityType.ADMIN, "") == 0


class TestDeviceLimit:
    def test_default_limit_is_ten(self, session_auth):
        assert session_auth.get_device_limit() == 10

    def test_limit_must_be_positive(self, session_auth):
        with pytest.raises(ValueError):
            session_auth.set_device_limit(0)

    def test_limit_rejects_then_admits_after_revoke(self, session_auth):
        session_auth.set_device_limit(3)
        tokens = [
            session_auth.generate_token(make_claims(authority_ids=[f"r{i}"]))[0]
            for i in range(3)
        ]

        with pytest.raises(OverDeviceLimitError) as excinfo:
            session_auth.generate_token(make_claims(authority_ids=["r3"]))
        assert excinfo.value.count == 3
        assert excinfo.value.limit == 3
        assert session_auth.is_over_limit(AuthorityType.ADMIN, "42")

        session_auth.revoke_token(tokens[0])

        session_auth.generate_token(make_claims(authority_ids=["r3"]))
        assert session_auth.count_active_sessions(AuthorityType.ADMIN, "42") == 3

    def test_admin_scenario_with_raised_limit(self, session_auth):
        session_auth.set_device_limit(5)
        for i in range(5):
            session_auth.generate_token(make_claims("42", authority_ids=[f"r{i}"]))

        with pytest.raises(OverDeviceLimitError):
            session_auth.generate_token(make_claims("42", authority_ids=["r5"]))
        assert session_auth.count_active_sessions(AuthorityType.ADMIN, "42") == 5

        session_auth.set_device_limit(10)
        session_auth.generate_token(make_claims("42", authority_ids=["r5"]))
        assert session_auth.count_active_sessions(AuthorityType.ADMIN, "42") == 6

    def test_limit_is_per_role_and_subject(self, session_auth):
        session_auth.set_device_limit(1)
        session_auth.generate_token(make_claims("42"))

        session_auth.generate_token(make_claims("43"))
        session_auth.generate_token(make_claims("42", authority_type=AuthorityType.GENERAL))

        assert session_auth.count_active_sessions(AuthorityType.ADMIN, "42") == 1
        assert session_auth.count_active_sessions(AuthorityType.GENERAL, "42") == 1


class TestDedup:
    def test_equal_claims_reuse_token(self, session_auth):
        first, _ = session_auth.generate_token(make_claims())
        second, _ = session_auth.generate_token(make_claims())

        assert first == second
        assert session_auth.count_active_sessions(AuthorityType.ADMIN, "42") == 1

    def test_reuse_allowed_at_limit(self, session_auth):
        session_auth.set_device_limit(1)
        first, _ = session_auth.generate_token(make_claims())

        second, _ = session_auth.generate_token(make_claims())

        assert first == second

    def test_different_channel_gets_new_token(self, session_auth):
        web, _ = session_auth.generate_token(make_claims(login_type=LoginType.WEB))
        app, _ = session_auth.generate_token(make_claims(login_type=LoginType.APP))

        assert web != app
        assert session_auth.count_active_sessions(AuthorityType.ADMIN, "42") == 2

    def test_get_token_by_claims(self, session_auth):
        token, _ = session_auth.generate_token(make_claims())

        assert session_auth.get_token_by_claims(make_claims()) == token
        assert session_auth.get_token_by_claims(make_claims(authority_ids=["other"])) is None


class TestRevoke:
    def test_revoke_removes_record_and_index(self, session_auth):
        token, _ = session_auth.generate_token(make_claims())

        session_auth.revoke_token(token)

        with pytest.raises(InvalidTokenError):
            session_auth.fetch_claims(token)
        assert token not in session_auth.get_user_tokens(AuthorityType.ADMIN, "42")

    def test_second_revoke_reports_already_gone(self, session_auth):
        token, _ = session_auth.generate_token(make_claims())
        session_auth.revoke_token(token)

        with pytest.raises(InvalidTokenError):
            session_auth.revoke_token(token)

    def test_user_token_expired_drops_index_entry(self, session_auth):
        token, _ = session_auth.generate_token(make_claims())

        session_auth.user_token_expired(token)

        assert token not in session_auth.get_user_tokens(AuthorityType.ADMIN, "42")
        with pytest.raises(InvalidTokenError):
            session_auth.user_token_expired(token)


class TestLazyPruning:
    def test_count_prunes_missing_records(self, session_auth):
        keep, _ = session_auth.generate_token(make_claims(authority_ids=["a"]))
        dead, _ = session_auth.generate_token(make_claims(authority_ids=["b"]))
        drop_record(session_auth, dead)

        assert dead in session_auth.get_user_tokens(AuthorityType.ADMIN, "42")
        assert session_auth.count_active_sessions(AuthorityType.ADMIN, "42") == 1
        assert session_auth.get_user_tokens(AuthorityType.ADMIN, "42") == [keep]

    def test_fetch_of_missing_record_unbinds(self, session_auth):
        token, _ = session_auth.generate_token(make_claims())
        drop_record(session_auth, token)

        with pytest.raises(InvalidTokenError):
            session_auth.fetch_claims(token)

        assert session_auth.get_user_tokens(AuthorityType.ADMIN, "42") == []

    def test_pruned_slot_frees_device_limit(self, session_auth):
        session_auth.set_device_limit(1)
        dead, _ = session_auth.generate_token(make_claims(authority_ids=["a"]))
        drop_record(session_auth, dead)

        token, _ = session_auth.generate_token(make_claims(authority_ids=["b"]))

        assert session_auth.get_user_tokens(AuthorityType.ADMIN, "42") == [token]


class TestCleanAll:
    def test_clean_revokes_every_session(self, session_auth):
        tokens = [
            session_auth.generate_token(make_claims(authority_ids=[f"r{i}"]))[0]
            for i in range(3)
        ]
        other, _ = session_auth.generate_token(make_claims("43"))

        session_auth.clean_user_sessions(AuthorityType.ADMIN, "42")

        assert session_auth.count_active_sessions(AuthorityType.ADMIN, "42") == 0
        for token in tokens:
            with pytest.raises(InvalidTokenError):
                session_auth.fetch_claims(token)
        assert session_auth.fetch_claims(other).id == "43"

    def test_clean_without_sessions_is_noop(self, session_auth):
        session_auth.clean_user_sessions(AuthorityType.ADMIN, "nobody")
        assert session_auth.count_active_sessions(AuthorityType.ADMIN, "nobody") == 0


class TestRoleChecks:
    def test_role_helpers(self, session_auth):
        token, _ = session_auth.generate_token(make_claims(authority_type=AuthorityType.TENANCY))

        assert session_auth.is_tenancy(token)
        assert not session_auth.is_admin(token)
        assert not session_auth.is_general(token)
        assert session_auth.is_role(token, AuthorityType.TENANCY)

    def test_role_check_propagates_invalid_token(self, session_auth):
        with pytest.raises(InvalidTokenError):
            session_auth.is_admin("missing")

    def test_get_auth_id(self, session_auth):
        token, _ = session_auth.generate_token(make_claims("42"))
        assert session_auth.get_auth_id(token) == 42

    def test_get_auth_id_rejects_non_numeric(self, session_auth):
        token, _ = session_auth.generate_token(make_claims("abc"))
        with pytest.raises(InvalidTokenError):
            session_auth.get_auth_id(token)
