"""
Dashboard aggregator — one payload per project, cached for DASHBOARD_CACHE_TTL.

Sections: overview, productivity, cohorts, adoption funnel, alerts and the
top recommendations. Alerts and recommendations are best-effort: if either
engine fails the dashboard still renders with an empty list for it.
"""
import csv
import io
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from app.config import ADOPTION_STAGES, DASHBOARD_CACHE_TTL, DASHBOARD_TOP_RECOMMENDATIONS
from app.errors import NotFoundError, ValidationError
from app.repositories.base import Repositories
from app.services.alerts import AlertService, summarize
from app.services.performance import PerformanceService, QueryCache
from app.services.recommendations import RecommendationService

logger = logging.getLogger('services.dashboard')

TIME_SERIES_METRICS = ('active_wallets', 'transactions', 'productivity')
EXPORT_FORMATS = ('json', 'csv')


def _avg(values):
    values = [v for v in values if v is not None]
    return round(sum(values) / len(values), 2) if values else 0.0


def render_csv(dashboard: Dict[str, Any]) -> str:
    """Section-labelled CSV: OVERVIEW, PRODUCTIVITY, ADOPTION FUNNEL."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator='\n')
    overview = dashboard['overview']
    productivity = dashboard['productivity']

    writer.writerow(['OVERVIEW'])
    writer.writerow(['Metric', 'Value'])
    writer.writerow(['Total Wallets', overview['total_wallets']])
    writer.writerow(['Active Wallets', overview['active_wallets']])
    writer.writerow(['Total Transactions', overview['total_transactions']])
    writer.writerow(['Total Volume (ZEC)', overview['total_volume_zec']])
    writer.writerow(['Avg Productivity Score', f"{overview['avg_productivity_score']:.2f}"])
    writer.writerow([])

    writer.writerow(['PRODUCTIVITY'])
    writer.writerow(['Metric', 'Value'])
    writer.writerow(['Avg Total Score', f"{productivity['avg_total_score']:.2f}"])
    writer.writerow(['Avg Retention Score', f"{productivity['avg_retention_score']:.2f}"])
    writer.writerow(['Avg Adoption Score', f"{productivity['avg_adoption_score']:.2f}"])
    writer.writerow(['Avg Activity Score', f"{productivity['avg_activity_score']:.2f}"])
    writer.writerow(['At Risk Wallets', productivity['at_risk_wallets']])
    writer.writerow(['Churn Wallets', productivity['churn_wallets']])
    writer.writerow([])

    writer.writerow(['ADOPTION FUNNEL'])
    writer.writerow(['Stage', 'Wallet Count', 'Avg Time (hours)'])
    for stage in dashboard['adoption']:
        writer.writerow([stage['stage'], stage['wallet_count'], f"{stage['avg_time_hours']:.2f}"])
    return buf.getvalue()


class DashboardService:

    def __init__(self, repos: Repositories, cache: QueryCache, performance: PerformanceService,
                 alerts: AlertService, recommendations: RecommendationService):
        self.repos = repos
        self.cache = cache
        self.performance = performance
        self.alerts = alerts
        self.recommendations = recommendations

    def get_project_dashboard(self, project_id: str) -> Dict[str, Any]:
        project = self.repos.projects.get_project(project_id)
        if project is None:
            raise NotFoundError(f'Project {project_id} not found')
        return self.cache.cached_query(
            f'dashboard:{project_id}', lambda: self._build(project), ttl=DASHBOARD_CACHE_TTL,
        )

    def _build(self, project) -> Dict[str, Any]:
        started = datetime.now()
        alerts = self._alerts(project.id)
        dashboard = {
            'project_id': project.id,
            'project_name': project.name,
            'category': project.category,
            'overview': self.performance.get_aggregated_metrics(project.id),
            'productivity': self._productivity(project.id),
            'cohorts': self._cohorts(project.id),
            'adoption': self._adoption_funnel(project.id),
            'alerts': alerts,
            'alert_summary': summarize(alerts),
            'recommendations': self._top_recommendations(project.id),
            'generated_at': datetime.now().isoformat(),
        }
        logger.info(
            "Dashboard built for %s in %.0fms (%d alerts)",
            project.id, (datetime.now() - started).total_seconds() * 1000, len(alerts),
        )
        return dashboard

    # ── Sections ─────────────────────────────────────────────────────────────

    def _productivity(self, project_id):
        wallets = self.performance.get_project_wallets(project_id)
        scores = list(self.repos.metrics.latest_scores([w.id for w in wallets]).values()) if wallets else []
        return {
            'avg_total_score': _avg(s.total_score for s in scores),
            'avg_retention_score': _avg(s.retention_score for s in scores),
            'avg_adoption_score': _avg(s.adoption_score for s in scores),
            'avg_activity_score': _avg(s.activity_score for s in scores),
            'healthy_wallets': sum(1 for s in scores if s.status == 'healthy'),
            'at_risk_wallets': sum(1 for s in scores if s.status == 'at_risk'),
            'churn_wallets': sum(1 for s in scores if s.status == 'churn'),
            'scored_wallets': len(scores),
        }

    def _cohorts(self, project_id):
        by_type = {}
        for cohort in self.repos.metrics.list_cohorts(project_id):
            by_type.setdefault(cohort.cohort_type, []).append(cohort)
        return [
            {
                'cohort_type': cohort_type,
                'cohort_count': len(cohorts),
                'avg_retention_week_1': _avg(c.retention_week_1 for c in cohorts),
                'avg_retention_week_2': _avg(c.retention_week_2 for c in cohorts),
                'avg_retention_week_4': _avg(c.retention_week_4 for c in cohorts),
            }
            for cohort_type, cohorts in sorted(by_type.items())
        ]

    def _adoption_funnel(self, project_id):
        wallets = self.performance.get_project_wallets(project_id)
        stages = self.repos.metrics.list_adoption_stages([w.id for w in wallets]) if wallets else []
        reached = {name: [] for name in ADOPTION_STAGES}
        for stage in stages:
            if stage.achieved_at is not None and stage.stage_name in reached:
                reached[stage.stage_name].append(stage)
        return [
            {
                'stage': name,
                'wallet_count': len({s.wallet_id for s in reached[name]}),
                'avg_time_hours': _avg(s.time_to_achieve_hours for s in reached[name]),
            }
            for name in ADOPTION_STAGES
        ]

    def _alerts(self, project_id) -> List[Dict[str, Any]]:
        try:
            return AlertService.flatten(self.alerts.check_project_alerts(project_id))
        except Exception as e:
            logger.error("Alerts unavailable for dashboard %s: %s", project_id, e, exc_info=True)
            return []

    def _top_recommendations(self, project_id) -> List[Dict[str, Any]]:
        try:
            result = self.recommendations.generate_project_recommendations(project_id, persist=False)
        except Exception as e:
            logger.error("Recommendations unavailable for dashboard %s: %s", project_id, e, exc_info=True)
            return []
        return result['recommendations'][:DASHBOARD_TOP_RECOMMENDATIONS]

    # ── Export / charts ──────────────────────────────────────────────────────

    def export_analytics_report(self, project_id: str, fmt: str = 'json') -> Dict[str, Any]:
        fmt = (fmt or 'json').lower()
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format '{fmt}'", details={'allowed': list(EXPORT_FORMATS)})
        dashboard = self.get_project_dashboard(project_id)
        return {
            'format': fmt,
            'data': render_csv(dashboard) if fmt == 'csv' else dashboard,
            'exported_at': datetime.now().isoformat(),
        }

    def get_time_series(self, project_id: str, metric: str, days: int = 30) -> List[Dict[str, Any]]:
        if metric not in TIME_SERIES_METRICS:
            raise ValidationError(f"Unknown metric '{metric}'", details={'allowed': list(TIME_SERIES_METRICS)})
        days = int(days)
        if days <= 0:
            raise ValidationError('days must be positive')
        if self.repos.projects.get_project(project_id) is None:
            raise NotFoundError(f'Project {project_id} not found')
        return self.cache.cached_query(
            f'timeseries:{project_id}:{metric}:{days}',
            lambda: self._time_series(project_id, metric, days),
        )

    def _time_series(self, project_id, metric, days):
        wallet_ids = [w.id for w in self.performance.get_project_wallets(project_id)]
        if not wallet_ids:
            return []
        since = date.today() - timedelta(days=days)
        points = {}

        if metric == 'productivity':
            for score in self.repos.metrics.list_scores(wallet_ids, since=datetime.combine(since, datetime.min.time())):
                points.setdefault(score.calculated_at.date(), []).append(score.total_score)
            return [{'date': d.isoformat(), 'value': _avg(v)} for d, v in sorted(points.items())]

        for sample in self.repos.metrics.list_activity(wallet_ids, since=since):
            if metric == 'active_wallets':
                if sample.is_active or sample.transaction_count > 0:
                    points.setdefault(sample.activity_date, set()).add(sample.wallet_id)
            else:
                points[sample.activity_date] = points.get(sample.activity_date, 0) + (sample.transaction_count or 0)
        return [
            {'date': d.isoformat(), 'value': len(v) if metric == 'active_wallets' else v}
            for d, v in sorted(points.items())
        ]

    def get_wallet_health_dashboard(self, project_id: Optional[str] = None) -> Dict[str, Any]:
        """Latest-score distribution by status and risk level, across all projects unless one is given."""
        def _load():
            wallet_ids = None
            if project_id is not None:
                wallet_ids = [w.id for w in self.performance.get_project_wallets(project_id)]
            latest = {}
            for score in self.repos.metrics.list_scores(wallet_ids):
                latest[score.wallet_id] = score

            health = {'by_status': {}, 'by_risk_level': {}, 'total_wallets': len(latest)}
            for key, attr in (('by_status', 'status'), ('by_risk_level', 'risk_level')):
                groups = {}
                for score in latest.values():
                    groups.setdefault(getattr(score, attr), []).append(score.total_score)
                health[key] = {
                    name: {'count': len(values), 'avg_score': _avg(values)}
                    for name, values in sorted(groups.items())
                }
            return health
        return self.cache.cached_query(f'health:{project_id or "all"}', _load)

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        cleared = self.cache.clear(pattern)
        logger.info("Cleared %d cache entries (pattern=%s)", cleared, pattern or '*')
        return cleared
