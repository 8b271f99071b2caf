# promo_engine/conftest.py
import pytest
from datetime import timedelta

from promo_engine.core.database import init_engine, dispose_engine, create_all_tables, utc_now
from promo_engine.core.metrics import METRICS
from promo_engine.tests.mocks import FakeGateway


@pytest.fixture(autouse=True)
def db_url(tmp_path):
    """
    Fresh SQLite file database per test.

    A file (not :memory:) so worker threads in concurrency tests share it.
    """
    url = f"sqlite:///{tmp_path / 'promo_engine.db'}"
    dispose_engine()
    init_engine(url)
    create_all_tables()
    METRICS.reset()
    yield url
    dispose_engine()


@pytest.fixture
def catalog():
    """Launch plans seeded into the test database."""
    from promo_engine.features.catalog.service import seed_plans

    seed_plans()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def make_coupon():
    """Factory for coupons valid from yesterday, open-ended unless told otherwise."""
    from promo_engine.features.coupons.ledger import create_coupon

    counter = {"n": 0}

    def _make(code=None, discount_kind="percentage", discount_value=50, **kwargs):
        counter["n"] += 1
        kwargs.setdefault("valid_from", utc_now() - timedelta(days=1))
        return create_coupon(
            code or f"TEST{counter['n']}",
            kwargs.pop("name", "Test coupon"),
            discount_kind,
            discount_value,
            **kwargs,
        )

    return _make
