"""
Service graph — built once per process, replaceable in tests.

MOCK_STORAGE=1 swaps in the in-memory repositories, MOCK_PAYMENTS=1 the
canned payment gateway; everything else is wired the same either way.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from app.config import MOCK_PAYMENTS, MOCK_STORAGE
from app.repositories.base import Repositories
from app.services.alerts import AlertService
from app.services.benchmarks import BenchmarkService
from app.services.cohorts import CohortService
from app.services.comparison import ComparisonService
from app.services.competitive_insights import CompetitiveInsightsService
from app.services.dashboard import DashboardService
from app.services.indexer_events import ResyncWorker
from app.services.monetization import MonetizationService
from app.services.payment_gateway import HttpPaymentGateway, MockPaymentGateway, PaymentGateway
from app.services.performance import PerformanceService, QueryCache
from app.services.privacy import PrivacyService
from app.services.recommendations import RecommendationService
from app.services.shielded_comparison import ShieldedComparisonService
from app.services.task_monitor import TaskMonitorService

logger = logging.getLogger('services.registry')


@dataclass
class Services:
    repos: Repositories
    cache: QueryCache
    gateway: PaymentGateway
    benchmarks: BenchmarkService
    privacy: PrivacyService
    performance: PerformanceService
    cohorts: CohortService
    comparison: ComparisonService
    insights: CompetitiveInsightsService
    alerts: AlertService
    recommendations: RecommendationService
    tasks: TaskMonitorService
    monetization: MonetizationService
    shielded: ShieldedComparisonService
    dashboard: DashboardService
    resync: ResyncWorker


def build_services(repos: Repositories, gateway: Optional[PaymentGateway] = None,
                   cache: Optional[QueryCache] = None,
                   resync: Optional[ResyncWorker] = None) -> Services:
    if cache is None:
        from app.extensions import redis_client
        cache = QueryCache(redis_client)
    gateway = gateway or MockPaymentGateway()
    performance = PerformanceService(repos, cache)
    comparison = ComparisonService(repos)
    alerts = AlertService(repos)
    recommendations = RecommendationService(repos)
    return Services(
        repos=repos,
        cache=cache,
        gateway=gateway,
        benchmarks=BenchmarkService(repos.benchmarks),
        privacy=PrivacyService(repos.projects, repos.metrics, repos.payments, cache=cache),
        performance=performance,
        cohorts=CohortService(repos),
        comparison=comparison,
        insights=CompetitiveInsightsService(comparison),
        alerts=alerts,
        recommendations=recommendations,
        tasks=TaskMonitorService(repos),
        monetization=MonetizationService(repos, gateway, cache=cache),
        shielded=ShieldedComparisonService(repos),
        dashboard=DashboardService(repos, cache, performance, alerts, recommendations),
        resync=resync or ResyncWorker(),
    )


_services: Optional[Services] = None
_lock = threading.Lock()


def get_services() -> Services:
    """Return the process-wide service graph, building it on first use."""
    global _services
    if _services is None:
        with _lock:
            if _services is None:
                if MOCK_STORAGE:
                    from app.repositories.memory import build_memory_repositories
                    repos = build_memory_repositories()
                else:
                    from app.repositories.sql import build_sql_repositories
                    repos = build_sql_repositories()
                gateway = MockPaymentGateway() if MOCK_PAYMENTS else HttpPaymentGateway()
                _services = build_services(repos, gateway=gateway)
                logger.info(
                    "Services built (storage=%s, payments=%s)",
                    'memory' if MOCK_STORAGE else 'sql', 'mock' if MOCK_PAYMENTS else 'http',
                )
    return _services


def set_services(services: Optional[Services]) -> None:
    """Install a prebuilt graph (tests), or None to rebuild on next use."""
    global _services
    with _lock:
        _services = services
