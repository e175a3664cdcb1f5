"""Shared test fixtures."""
import fnmatch
from datetime import date, datetime, timedelta
from unittest.mock import patch, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.database import Base, import_models
from app.repositories.base import (
    ActivitySample, AdoptionStageRecord, CohortRecord, ProjectRecord, ScoreRecord, WalletRecord,
)
from app.repositories.memory import build_memory_repositories
from app.services.indexer_events import RateLimiter, ResyncWorker
from app.services.payment_gateway import MockPaymentGateway
from app.services.performance import QueryCache
from app.services.registry import build_services, set_services


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created."""
    engine = create_engine('sqlite:///:memory:')
    import_models()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """SQLAlchemy session bound to in-memory SQLite. Rolls back after each test."""
    Session = sessionmaker(bind=db_engine, expire_on_commit=False)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def patch_get_session(db_session):
    """Route all get_session() calls to the test session.

    We disable close() so that repositories calling session.close()
    in their finally blocks don't invalidate the shared test session.
    """
    _real_close = db_session.close
    db_session.close = lambda: None
    with patch('app.database.get_session', return_value=db_session):
        yield db_session
    db_session.close = _real_close


@pytest.fixture
def mock_redis():
    """Mock Redis client. Returns a MagicMock with common Redis methods."""
    mock = MagicMock()
    mock.get.return_value = None
    mock.hgetall.return_value = {}
    with patch('app.extensions.redis_client', mock):
        yield mock


# ---------------------------------------------------------------------------
# Redis fake for the query cache
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeRedis:
    """In-memory string store with SETEX expiry driven by a clock."""

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.store = {}     # key → (value, expires_at or None)

    def _live(self, key):
        entry = self.store.get(key)
        if entry is None:
            return None
        if entry[1] is not None and entry[1] <= self.clock():
            del self.store[key]
            return None
        return entry

    def get(self, key):
        entry = self._live(key)
        return entry[0] if entry else None

    def set(self, key, value):
        self.store[key] = (str(value), None)

    def setex(self, key, ttl, value):
        self.store[key] = (str(value), self.clock() + ttl)

    def ttl(self, key):
        entry = self._live(key)
        if entry is None:
            return -2
        if entry[1] is None:
            return -1
        return int(entry[1] - self.clock())

    def delete(self, *keys):
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    def scan_iter(self, match='*'):
        return [k for k in list(self.store) if self._live(k) and fnmatch.fnmatchcase(k, match)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def cache(fake_redis):
    return QueryCache(fake_redis, default_ttl=60)


# ---------------------------------------------------------------------------
# Service graph (in-memory repositories, canned payment gateway)
# ---------------------------------------------------------------------------

@pytest.fixture
def repos():
    return build_memory_repositories()


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def resync_handler():
    return MagicMock(name='resync_handler')


@pytest.fixture
def services(repos, gateway, resync_handler, cache):
    worker = ResyncWorker(handler=resync_handler, rate_limiter=RateLimiter(interval=60))
    svc = build_services(repos, gateway=gateway, cache=cache, resync=worker)
    yield svc
    worker.stop(timeout=1)


@pytest.fixture
def app(services):
    """Flask test app wired to the in-memory service graph."""
    from app import create_app
    set_services(services)
    app = create_app()
    app.config['TESTING'] = True
    yield app
    set_services(None)


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_project(repos):
    def _make(project_id='proj-1', owner_id='owner-1', category='defi', **overrides):
        project = ProjectRecord(id=project_id, owner_id=owner_id, name=overrides.pop('name', f'Project {project_id}'),
                                category=category, created_at=datetime(2026, 1, 1), **overrides)
        return repos.projects.add_project(project)
    return _make


@pytest.fixture
def make_wallet(repos):
    def _make(wallet_id, project_id='proj-1', privacy_mode='private', wallet_type='t', **overrides):
        wallet = WalletRecord(
            id=wallet_id, project_id=project_id, owner_id='', address=f'addr-{wallet_id}',
            wallet_type=wallet_type, privacy_mode=privacy_mode, **overrides,
        )
        return repos.projects.add_wallet(wallet)
    return _make


@pytest.fixture
def add_activity(repos):
    """Write one ActivitySample per day, `days_ago` counted back from today."""
    def _add(wallet_id, days_ago, transaction_count=1, **fields):
        sample = ActivitySample(
            wallet_id=wallet_id,
            activity_date=date.today() - timedelta(days=days_ago),
            transaction_count=transaction_count,
            is_active=fields.pop('is_active', transaction_count > 0),
            **fields,
        )
        repos.metrics.upsert_activity([sample])
        return sample
    return _add


@pytest.fixture
def add_score(repos):
    def _add(wallet_id, total_score, status=None, risk_level=None, calculated_at=None, **components):
        if status is None:
            status = 'healthy' if total_score >= 70 else 'at_risk' if total_score >= 40 else 'churn'
        if risk_level is None:
            risk_level = 'low' if total_score >= 70 else 'medium' if total_score >= 40 else 'high'
        score = ScoreRecord(
            wallet_id=wallet_id, total_score=total_score, status=status, risk_level=risk_level,
            calculated_at=calculated_at or datetime.now(), **components,
        )
        repos.metrics.add_scores([score])
        return score
    return _add


@pytest.fixture
def add_cohort(repos):
    def _add(project_id, weeks_ago, week_1=None, week_2=None, week_3=None, week_4=None,
             cohort_type='weekly', wallet_count=10):
        cohort = CohortRecord(
            project_id=project_id, cohort_type=cohort_type,
            cohort_period=date.today() - timedelta(weeks=weeks_ago), wallet_count=wallet_count,
            retention_week_1=week_1, retention_week_2=week_2,
            retention_week_3=week_3, retention_week_4=week_4,
        )
        repos.metrics.add_cohort(cohort)
        return cohort
    return _add


@pytest.fixture
def add_stage(repos):
    def _add(wallet_id, stage_name, hours=1.0, achieved=True):
        stage = AdoptionStageRecord(
            wallet_id=wallet_id, stage_name=stage_name,
            achieved_at=datetime.now() if achieved else None, time_to_achieve_hours=hours,
        )
        repos.metrics.add_adoption_stage(stage)
        return stage
    return _add
