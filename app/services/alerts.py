"""
Alert engine — threshold checks over a project's current metrics.

Each rule family is a pure function over already-loaded data, so detection is
stateless per evaluation: the same inputs always fire the same alerts.
AlertService loads the inputs and applies per-project threshold overrides.
"""
import copy
import logging
from datetime import date, datetime, timedelta
from numbers import Number
from typing import Any, Dict, List, Optional

from app.config import ADOPTION_STAGES, DEFAULT_ALERT_THRESHOLDS, ZATOSHI_PER_ZEC
from app.errors import NotFoundError, ValidationError
from app.repositories.base import CohortRecord, Repositories, ScoreRecord

logger = logging.getLogger('services.alerts')

SEVERITIES = ('critical', 'warning', 'info')

RETENTION_DROP_CRITICAL = 25     # % drop week over week
COMBINED_RISK_CRITICAL = 60      # churned + at_risk %
FUNNEL_DROP_CRITICAL = 70
SHIELDED_MIN_DAYS = 7
SHIELDED_DROP_MIN_AVERAGE = 10


def _alert(alert_type: str, severity: str, title: str, message: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'type': alert_type,
        'severity': severity,
        'title': title,
        'message': message,
        'data': data,
        'detected_at': datetime.now().isoformat(),
    }


def merge_thresholds(overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Dict[str, Any]]:
    """Defaults with per-category overrides applied key by key."""
    merged = copy.deepcopy(DEFAULT_ALERT_THRESHOLDS)
    for category, values in (overrides or {}).items():
        if category in merged and isinstance(values, dict):
            merged[category].update(values)
    return merged


def validate_thresholds(thresholds: Dict[str, Any]) -> None:
    if not isinstance(thresholds, dict):
        raise ValidationError('thresholds must be an object')
    errors = {}
    for category, values in thresholds.items():
        if category not in DEFAULT_ALERT_THRESHOLDS:
            errors[category] = 'unknown category'
            continue
        if not isinstance(values, dict):
            errors[category] = 'must be an object'
            continue
        for key, value in values.items():
            if key not in DEFAULT_ALERT_THRESHOLDS[category]:
                errors[f'{category}.{key}'] = 'unknown threshold'
            elif isinstance(value, bool) or not isinstance(value, Number) or value <= 0:
                errors[f'{category}.{key}'] = 'must be a positive number'
    if errors:
        raise ValidationError('Invalid alert thresholds', details=errors)


# ── Rule families ────────────────────────────────────────────────────────────

def check_retention_alerts(cohorts: List[CohortRecord], thresholds: Dict[str, Any]) -> List[Dict]:
    """Week-1 retention across consecutive weekly cohorts (newest first)."""
    alerts = []
    if len(cohorts) < 2:
        return alerts

    for current, previous in zip(cohorts, cohorts[1:]):
        cur, prev = current.retention_week_1, previous.retention_week_1
        if cur is not None and prev:
            drop_pct = (prev - cur) / prev * 100
            if drop_pct >= thresholds['drop_percentage']:
                alerts.append(_alert(
                    'retention_drop',
                    'critical' if drop_pct >= RETENTION_DROP_CRITICAL else 'warning',
                    'Significant retention drop detected',
                    f'Week 1 retention dropped {drop_pct:.1f}% from {prev:.1f}% to {cur:.1f}%',
                    {
                        'current_cohort': current.cohort_period.isoformat(),
                        'previous_cohort': previous.cohort_period.isoformat(),
                        'current_retention': cur,
                        'previous_retention': prev,
                        'drop_percentage': drop_pct,
                    },
                ))

        if cur is not None and cur < thresholds['critical_level']:
            alerts.append(_alert(
                'retention_critical', 'critical', 'Critical retention level',
                f"Week 1 retention is critically low at {cur:.1f}% "
                f"(threshold: {thresholds['critical_level']}%)",
                {'cohort': current.cohort_period.isoformat(), 'retention': cur,
                 'threshold': thresholds['critical_level']},
            ))
        elif cur is not None and cur < thresholds['warning_level']:
            alerts.append(_alert(
                'retention_warning', 'warning', 'Low retention level',
                f"Week 1 retention is below target at {cur:.1f}% "
                f"(threshold: {thresholds['warning_level']}%)",
                {'cohort': current.cohort_period.isoformat(), 'retention': cur,
                 'threshold': thresholds['warning_level']},
            ))
    return alerts


def check_churn_alerts(scores: List[Optional[ScoreRecord]], thresholds: Dict[str, Any]) -> List[Dict]:
    """One entry per active wallet; None for wallets without a score yet."""
    alerts = []
    total = len(scores)
    if total == 0:
        return alerts

    churned = sum(1 for s in scores if s is not None and s.status == 'churn')
    high_risk = sum(1 for s in scores if s is not None and s.risk_level == 'high')
    at_risk = sum(1 for s in scores if s is not None and s.status == 'at_risk')

    churn_rate = churned / total * 100
    high_risk_pct = high_risk / total * 100
    at_risk_pct = at_risk / total * 100

    if churn_rate >= thresholds['critical_rate']:
        alerts.append(_alert(
            'churn_critical', 'critical', 'Critical churn rate',
            f'{churn_rate:.1f}% of wallets are churning ({churned}/{total})',
            {'churn_rate': churn_rate, 'churned_wallets': churned,
             'total_wallets': total, 'threshold': thresholds['critical_rate']},
        ))

    if high_risk_pct >= thresholds['high_risk_percentage']:
        alerts.append(_alert(
            'high_risk_wallets', 'warning', 'High number of at-risk wallets',
            f'{high_risk_pct:.1f}% of wallets are at high risk of churning ({high_risk}/{total})',
            {'high_risk_percentage': high_risk_pct, 'high_risk_wallets': high_risk,
             'total_wallets': total, 'threshold': thresholds['high_risk_percentage']},
        ))

    combined = churn_rate + at_risk_pct
    if combined >= COMBINED_RISK_CRITICAL:
        alerts.append(_alert(
            'combined_risk', 'critical', 'High combined churn and risk',
            f'{combined:.1f}% of wallets are churned or at risk',
            {'churn_rate': churn_rate, 'at_risk_percentage': at_risk_pct,
             'combined_percentage': combined, 'affected_wallets': churned + at_risk,
             'total_wallets': total},
        ))
    return alerts


def check_funnel_alerts(stage_counts: Dict[str, int], total_wallets: int,
                        thresholds: Dict[str, Any]) -> List[Dict]:
    """stage_counts: wallets that reached each stage."""
    alerts = []
    if total_wallets == 0:
        return alerts

    for current_stage, next_stage in zip(ADOPTION_STAGES, ADOPTION_STAGES[1:]):
        if current_stage in stage_counts:
            current_count = stage_counts[current_stage]
        else:
            # every wallet has implicitly been created
            current_count = total_wallets if current_stage == 'created' else 0
        next_count = stage_counts.get(next_stage, 0)
        if current_count <= 0:
            continue

        drop_off = (current_count - next_count) / current_count * 100
        if drop_off >= thresholds['stage_drop_threshold']:
            alerts.append(_alert(
                'funnel_drop_off',
                'critical' if drop_off >= FUNNEL_DROP_CRITICAL else 'warning',
                f'High drop-off at {next_stage} stage',
                f'{drop_off:.1f}% of users drop off between {current_stage} and {next_stage}',
                {'from_stage': current_stage, 'to_stage': next_stage,
                 'from_count': current_count, 'to_count': next_count,
                 'drop_off_percentage': drop_off,
                 'threshold': thresholds['stage_drop_threshold']},
            ))

    for stage in ADOPTION_STAGES:
        if stage not in stage_counts:
            continue
        count = stage_counts[stage]
        rate = count / total_wallets * 100
        if rate < thresholds['critical_conversion']:
            alerts.append(_alert(
                'low_conversion', 'warning', f'Low conversion rate at {stage}',
                f'Only {rate:.1f}% of wallets reach {stage} stage',
                {'stage': stage, 'conversion_rate': rate, 'wallets_achieved': count,
                 'total_wallets': total_wallets, 'threshold': thresholds['critical_conversion']},
            ))
    return alerts


def check_shielded_alerts(daily: List[Dict[str, Any]], thresholds: Dict[str, Any]) -> List[Dict]:
    """daily: per-day {date, shielded_tx_count, shielded_volume_zatoshi}, newest first."""
    alerts = []
    if len(daily) < SHIELDED_MIN_DAYS:
        return alerts

    avg_txs = sum(d['shielded_tx_count'] for d in daily) / len(daily)
    avg_volume = sum(d['shielded_volume_zatoshi'] for d in daily) / len(daily)
    today = daily[0]
    today_txs = today['shielded_tx_count']
    today_volume = today['shielded_volume_zatoshi']
    day = today['date'].isoformat() if isinstance(today['date'], date) else today['date']

    if avg_txs > 0 and today_txs > avg_txs * thresholds['spike_multiplier']:
        alerts.append(_alert(
            'shielded_spike', 'info', 'Shielded transaction spike detected',
            f'Shielded transactions increased to {today_txs} ({today_txs / avg_txs:.1f}x average)',
            {'current_txs': today_txs, 'average_txs': round(avg_txs),
             'multiplier': today_txs / avg_txs, 'date': day},
        ))

    if avg_txs > SHIELDED_DROP_MIN_AVERAGE and today_txs < avg_txs * thresholds['drop_multiplier']:
        alerts.append(_alert(
            'shielded_drop', 'warning', 'Shielded transaction drop detected',
            f'Shielded transactions dropped to {today_txs} ({today_txs / avg_txs * 100:.1f}% of average)',
            {'current_txs': today_txs, 'average_txs': round(avg_txs),
             'percentage_of_average': today_txs / avg_txs * 100, 'date': day},
        ))

    change = abs(today_volume - avg_volume)
    if change > thresholds['volume_threshold']:
        direction = 'increase' if today_volume > avg_volume else 'decrease'
        alerts.append(_alert(
            'shielded_volume_change', 'info', f'Significant shielded volume {direction}',
            f'Shielded volume {direction}d by {change / ZATOSHI_PER_ZEC:.2f} ZEC',
            {'current_volume': today_volume, 'average_volume': round(avg_volume),
             'change_zatoshi': change, 'change_zec': change / ZATOSHI_PER_ZEC, 'date': day},
        ))
    return alerts


def summarize(alerts: List[Dict]) -> Dict[str, int]:
    summary = {'total': len(alerts)}
    for severity in SEVERITIES:
        summary[severity] = sum(1 for a in alerts if a['severity'] == severity)
    return summary


class AlertService:

    def __init__(self, repos: Repositories):
        self.repos = repos

    def _require_project(self, project_id):
        project = self.repos.projects.get_project(project_id)
        if project is None:
            raise NotFoundError(f'Project {project_id} not found')
        return project

    def get_alert_configuration(self, project_id: str) -> Dict[str, Dict[str, Any]]:
        self._require_project(project_id)
        return merge_thresholds(self.repos.projects.get_alert_thresholds(project_id))

    def update_alert_configuration(self, project_id: str, thresholds: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        self._require_project(project_id)
        validate_thresholds(thresholds)
        stored = self.repos.projects.get_alert_thresholds(project_id)
        for category, values in thresholds.items():
            stored.setdefault(category, {}).update(values)
        self.repos.projects.save_alert_thresholds(project_id, stored)
        logger.info("Updated alert thresholds for project %s: %s", project_id, sorted(thresholds))
        return merge_thresholds(stored)

    def check_project_alerts(self, project_id: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._require_project(project_id)
        if overrides:
            validate_thresholds(overrides)
        thresholds = merge_thresholds(self.repos.projects.get_alert_thresholds(project_id))
        for category, values in (overrides or {}).items():
            thresholds[category].update(values)

        retention = check_retention_alerts(self._recent_weekly_cohorts(project_id), thresholds['retention'])
        active = self.repos.projects.list_wallets(project_id, active_only=True)
        scores = self.repos.metrics.latest_scores([w.id for w in active]) if active else {}
        churn = check_churn_alerts([scores.get(w.id) for w in active], thresholds['churn'])

        all_wallets = self.repos.projects.list_wallets(project_id)
        funnel = check_funnel_alerts(self._stage_counts(all_wallets), len(all_wallets), thresholds['funnel'])
        shielded = check_shielded_alerts(self._daily_shielded(all_wallets), thresholds['shielded'])

        result = {
            'project_id': project_id,
            'retention_alerts': retention,
            'churn_alerts': churn,
            'funnel_alerts': funnel,
            'shielded_alerts': shielded,
            'checked_at': datetime.now().isoformat(),
        }
        result['summary'] = summarize(retention + churn + funnel + shielded)
        if result['summary']['critical']:
            logger.warning(
                "Project %s has %d critical alerts", project_id, result['summary']['critical'],
            )
        return result

    @staticmethod
    def flatten(result: Dict[str, Any]) -> List[Dict]:
        return (result.get('retention_alerts', []) + result.get('churn_alerts', [])
                + result.get('funnel_alerts', []) + result.get('shielded_alerts', []))

    def _recent_weekly_cohorts(self, project_id):
        cutoff = date.today() - timedelta(weeks=8)
        cohorts = self.repos.metrics.list_cohorts(project_id, cohort_type='weekly')
        return [c for c in cohorts if c.cohort_period >= cutoff][:4]

    def _stage_counts(self, wallets):
        if not wallets:
            return {}
        reached = {}
        for stage in self.repos.metrics.list_adoption_stages([w.id for w in wallets]):
            if stage.achieved_at is not None:
                reached.setdefault(stage.stage_name, set()).add(stage.wallet_id)
        return {name: len(ids) for name, ids in reached.items()}

    def _daily_shielded(self, wallets):
        if not wallets:
            return []
        since = date.today() - timedelta(days=30)
        by_day = {}
        for s in self.repos.metrics.list_activity([w.id for w in wallets], since=since):
            if not s.shielded_count and not s.shielded_volume_zatoshi:
                continue
            day = by_day.setdefault(s.activity_date, {
                'date': s.activity_date, 'shielded_tx_count': 0, 'shielded_volume_zatoshi': 0,
            })
            day['shielded_tx_count'] += s.shielded_count or 0
            day['shielded_volume_zatoshi'] += s.shielded_volume_zatoshi or 0
        return sorted(by_day.values(), key=lambda d: d['date'], reverse=True)
