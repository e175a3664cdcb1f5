"""
Task completion monitor — baseline vs current metrics for recommendation tasks.

A task completes once at least 80% of its recommendation's completion
indicators are met. Completed tasks get an effectiveness score: the
non-negative improvement of the metric the recommendation type targets.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, Optional

from app.config import ACTIVITY_RESUMED_DAYS, TASK_COMPLETION_THRESHOLD
from app.errors import NotFoundError, ValidationError
from app.repositories.base import Repositories, TaskRecord
from app.services.productivity import calculate_productivity_score
from app.services.recommendations import project_snapshot, wallet_snapshot

logger = logging.getLogger('services.task_monitor')

EFFECTIVENESS_METRIC = {
    'retention': 'retention_score',
    'onboarding': 'adoption_score',
    'engagement': 'activity_score',
    'marketing': 'total_score',
    'feature_enhancement': 'total_score',
}

# Project tasks target fleet health; snapshots carry averaged component scores.
PROJECT_EFFECTIVENESS_METRIC = {
    'retention': 'health_percentage',
    'onboarding': 'adoption_score',
    'engagement': 'health_percentage',
    'marketing': 'health_percentage',
    'feature_enhancement': 'total_score',
}

FREQUENCY_MIN_DAILY_TX = {'daily': 1.0, 'weekly': 0.14}


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _check_indicator(key: str, value, baseline: Dict, current: Dict, today: date):
    """Return (is_met, details) for one indicator. Unknown kinds are never met."""
    if key == 'activity_increase':
        before = baseline.get('active_days') or 0
        after = current.get('active_days') or 0
        if value and after > before:
            return True, f'Active days increased from {before} to {after}'
        return False, ''

    if key == 'transaction_frequency':
        window = current.get('window_days') or 30
        per_day = (current.get('transaction_count') or 0) / window
        needed = FREQUENCY_MIN_DAILY_TX.get(value)
        if needed is not None and per_day >= needed:
            return True, f'{value.capitalize()} transaction frequency achieved ({per_day:.2f} txs/day)'
        return False, ''

    if key == 'activity_resumed':
        days = ACTIVITY_RESUMED_DAYS if value is True else int(value or 0)
        last = _as_date(current.get('last_activity_date'))
        if days and last is not None and (today - last).days <= days:
            return True, f'Activity resumed (last active {(today - last).days} days ago)'
        return False, ''

    if key.endswith('_target'):
        metric = key[:-len('_target')]
        actual = current.get(metric)
        if actual is not None and actual >= value:
            return True, f'{metric} reached {actual} (target: {value})'
        return False, ''

    return False, f'Unsupported indicator {key}'


def check_completion_indicators(indicators: Optional[Dict[str, Any]], baseline: Dict[str, Any],
                                current: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    if not indicators:
        return {
            'is_completed': False,
            'completion_percentage': 0,
            'met_count': 0,
            'total_indicators': 0,
            'indicators_met': [],
            'indicators_pending': [],
        }

    today = today or date.today()
    checks = []
    for key, value in indicators.items():
        is_met, details = _check_indicator(key, value, baseline or {}, current or {}, today)
        checks.append({'indicator': key, 'required_value': value, 'is_met': is_met, 'details': details})

    met = sum(1 for c in checks if c['is_met'])
    total = len(checks)
    return {
        'is_completed': met / total >= TASK_COMPLETION_THRESHOLD,
        'completion_percentage': round(met / total * 100),
        'met_count': met,
        'total_indicators': total,
        'indicators_met': [c for c in checks if c['is_met']],
        'indicators_pending': [c for c in checks if not c['is_met']],
    }


def effectiveness_level(score: float) -> str:
    if score >= 20:
        return 'High'
    if score >= 10:
        return 'Medium'
    return 'Low'


def calculate_effectiveness(baseline: Dict[str, Any], current: Dict[str, Any], task_type: str,
                             project_level: bool = False) -> Dict[str, Any]:
    """Non-negative improvement of the metric keyed by task_type. Regressions score 0."""
    metric = (PROJECT_EFFECTIVENESS_METRIC if project_level else EFFECTIVENESS_METRIC).get(task_type)
    improvements = []
    score = 0.0
    if metric is not None and baseline.get(metric) is not None and current.get(metric) is not None:
        improvement = current[metric] - baseline[metric]
        score = max(0.0, float(improvement))
        improvements.append({
            'metric': metric,
            'baseline': baseline[metric],
            'current': current[metric],
            'improvement': improvement,
        })

    score = round(min(score, 100.0), 2)
    level = effectiveness_level(score)
    return {
        'score': score,
        'level': level,
        'improvements': improvements,
        'summary': f'Task effectiveness: {level} ({round(score)} points improvement)',
    }


class TaskMonitorService:

    def __init__(self, repos: Repositories):
        self.repos = repos

    def _load(self, task_id: int):
        task = self.repos.recommendations.get_task(task_id)
        if task is None:
            raise NotFoundError(f'Task {task_id} not found')
        rec = self.repos.recommendations.get_recommendation(task.recommendation_id)
        if rec is None:
            raise NotFoundError(f'Recommendation {task.recommendation_id} not found')
        return task, rec

    def _current_metrics(self, rec) -> Dict[str, Any]:
        if rec.wallet_id:
            return wallet_snapshot(self.repos, rec.wallet_id)
        if rec.project_id:
            return project_snapshot(self.repos, rec.project_id)
        raise ValidationError('Recommendation is not linked to a wallet or project')

    def _rescore(self, wallet_id: str):
        today = date.today()
        samples = self.repos.metrics.list_activity([wallet_id], until=today)
        stages = self.repos.metrics.list_adoption_stages([wallet_id])
        self.repos.metrics.add_scores([calculate_productivity_score(wallet_id, samples, stages, as_of=today)])

    def get_task(self, task_id: int) -> Dict[str, Any]:
        task, rec = self._load(task_id)
        return {**task.to_dict(), 'recommendation': rec.to_dict()}

    def set_baseline_metrics(self, task_id: int) -> Dict[str, Any]:
        task, rec = self._load(task_id)
        task.baseline_metrics = self._current_metrics(rec)
        self.repos.recommendations.update_task(task)
        return task.baseline_metrics

    def monitor_task_completion(self, task_id: int) -> Dict[str, Any]:
        task, rec = self._load(task_id)
        if task.status == 'completed':
            return self._result(task, rec, None, None)

        current = self._current_metrics(rec)
        status = check_completion_indicators(rec.completion_indicators, task.baseline_metrics, current)
        task.completion_percentage = float(status['completion_percentage'])
        task.last_checked_at = datetime.now()

        effectiveness = None
        if status['is_completed']:
            effectiveness = calculate_effectiveness(task.baseline_metrics, current, rec.type,
                                                    project_level=not rec.wallet_id)
            self._complete(task, effectiveness)
            if rec.wallet_id:
                self._rescore(rec.wallet_id)
            logger.info(
                "Task %s completed (%s effectiveness, %.0f%% indicators)",
                task.id, effectiveness['level'], task.completion_percentage,
            )
        self.repos.recommendations.update_task(task)
        return self._result(task, rec, status, effectiveness, current)

    def mark_task_completed(self, task_id: int) -> Dict[str, Any]:
        """Manual completion; effectiveness is still measured against the baseline."""
        task, rec = self._load(task_id)
        if task.status == 'completed':
            return self._result(task, rec, None, None)
        current = self._current_metrics(rec)
        effectiveness = calculate_effectiveness(task.baseline_metrics, current, rec.type,
                                                project_level=not rec.wallet_id)
        task.last_checked_at = datetime.now()
        self._complete(task, effectiveness)
        self.repos.recommendations.update_task(task)
        return self._result(task, rec, None, effectiveness, current)

    @staticmethod
    def _complete(task: TaskRecord, effectiveness: Dict[str, Any]):
        task.status = 'completed'
        task.completed_at = datetime.now()
        task.effectiveness_score = effectiveness['score']
        task.effectiveness_level = effectiveness['level']

    @staticmethod
    def _result(task, rec, status, effectiveness, current=None) -> Dict[str, Any]:
        return {
            'task_id': task.id,
            'recommendation_id': rec.id,
            'status': task.status,
            'is_completed': task.status == 'completed',
            'completion_percentage': task.completion_percentage,
            'indicators_met': status['indicators_met'] if status else [],
            'indicators_pending': status['indicators_pending'] if status else [],
            'effectiveness': effectiveness or (
                {'score': task.effectiveness_score, 'level': task.effectiveness_level}
                if task.effectiveness_score is not None else None
            ),
            'current_metrics': current,
            'checked_at': (task.last_checked_at or datetime.now()).isoformat(),
        }

    def run_periodic_monitoring(self) -> Dict[str, Any]:
        pending = self.repos.recommendations.list_tasks(status='pending')
        logger.info("Monitoring %d pending tasks", len(pending))
        completed, errors = 0, []
        for task in pending:
            try:
                if self.monitor_task_completion(task.id)['is_completed']:
                    completed += 1
            except (NotFoundError, ValidationError) as e:
                logger.warning("Task %s could not be monitored: %s", task.id, e.message)
                errors.append({'task_id': task.id, 'error': e.message})
        return {
            'total_monitored': len(pending),
            'completed': completed,
            'errors': errors,
            'monitored_at': datetime.now().isoformat(),
        }
