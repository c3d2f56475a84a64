import os
import sys
from decimal import Decimal
from pathlib import Path

import pytest

os.environ.setdefault("BILLING_REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("BILLING_DATABASE_URL", "sqlite:///:memory:")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
TESTS_ROOT = Path(__file__).resolve().parent
if str(TESTS_ROOT) not in sys.path:
    sys.path.insert(0, str(TESTS_ROOT))

from billing.config import BillingSettings  # noqa: E402
from billing.fast_ledger import FastLedger  # noqa: E402
from billing.ledger import DurableLedger  # noqa: E402
from billing.notifications import ConnectionRegistry, Notifier  # noqa: E402
from billing.service import BillingService  # noqa: E402

from fakes import FakeClock, FakeRedis  # noqa: E402


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def settings():
    return build_settings()


def build_settings(**overrides) -> BillingSettings:
    defaults = dict(
        settlement_interval_seconds=600,
        heartbeat_timeout_seconds=120,
        settlement_lock_wait_seconds=0.2,
        teardown_timeout_seconds=2.0,
        api_admin_token="secret",
    )
    defaults.update(overrides)
    return BillingSettings(**defaults)


@pytest.fixture()
def fast_ledger(fake_redis, settings):
    return FastLedger(
        fake_redis,
        session_ttl_seconds=settings.session_ttl_seconds,
        heartbeat_ttl_seconds=settings.heartbeat_ttl_seconds,
    )


@pytest.fixture()
def ledger(tmp_path):
    return DurableLedger.from_url(f"sqlite:///{tmp_path / 'billing.db'}")


@pytest.fixture()
def seeded(ledger):
    """One viewer with 1.0 credit and one creator owning video ``vid-1``."""
    ledger.create_user("user-1", balance=Decimal("1.0"), name="Viewer")
    ledger.create_creator("creator-1", name="Creator")
    ledger.create_creator("creator-2", name="Second Creator")
    ledger.register_video("vid-1", "creator-1")
    ledger.register_video("vid-2", "creator-2")
    return ledger


@pytest.fixture()
def registry():
    return ConnectionRegistry()


@pytest.fixture()
def notifier(registry):
    return Notifier(registry, max_queue=100)


@pytest.fixture()
def service(settings, fast_ledger, seeded, notifier, clock):
    billing = BillingService(settings, fast_ledger, seeded, notifier=notifier, clock=clock)
    yield billing
    billing.shutdown()
