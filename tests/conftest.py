import os
import sys
from pathlib import Path

# Pin settings before any import that might build the runtime
os.environ.setdefault("AUTH_DRIVER", "local")
os.environ.setdefault("TOKEN_MAX_COUNT", "10")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import fakeredis  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from multisession.claims import AuthorityType, CustomClaims, LoginType  # noqa: E402
from multisession.service.runtime import reset_runtime_for_tests  # noqa: E402
from multisession.storage.expiring import ExpiringStore  # noqa: E402
from multisession.storage.memory import LocalAuth  # noqa: E402
from multisession.storage.redis_cache import RedisAuth  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def local_auth(clock):
    return LocalAuth(ExpiringStore(clock=clock))


@pytest.fixture
def redis_client():
    # Own server per test so state never leaks between tests
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def redis_auth(redis_client):
    return RedisAuth(redis_client)


@pytest.fixture(params=["local", "redis"])
def session_auth(request, clock):
    """Each stateful backend in turn."""
    if request.param == "local":
        return LocalAuth(ExpiringStore(clock=clock))
    return RedisAuth(fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True))


def make_claims(
    user_id="42",
    *,
    authority_type=AuthorityType.ADMIN,
    login_type=LoginType.WEB,
    authority_ids=("admin",),
    **kwargs,
) -> CustomClaims:
    return CustomClaims.new(
        user_id,
        username=kwargs.pop("username", "alice"),
        tenancy_id=kwargs.pop("tenancy_id", 7),
        tenancy_name=kwargs.pop("tenancy_name", "acme"),
        authority_ids=authority_ids,
        authority_type=authority_type,
        login_type=login_type,
        **kwargs,
    )
