import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fakes import SANAA, FakeAddressResolver, RecordingNotifier
from marketplace.core.config import get_settings
from marketplace.models.marketplace import Base
from marketplace.services.negotiation_service import NegotiationEngine
from marketplace.utils.alerting import alert_tracker
from marketplace.utils.rate_limit import rate_limiter


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance (or limiter/alert state) across tests.
    get_settings.cache_clear()
    alert_tracker.reset()
    rate_limiter.reset()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def addresses():
    resolver = FakeAddressResolver()
    resolver.add("cust-1", "addr-sanaa", SANAA[0], SANAA[1], "Sanaa")
    return resolver


@pytest.fixture
def negotiation(db, notifier, addresses):
    return NegotiationEngine(db, notifier, addresses)
