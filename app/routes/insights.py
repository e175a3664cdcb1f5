"""
Insight routes — alerts (raw and enriched), alert thresholds,
recommendations and recommendation tasks.
"""
import logging

from flask import Blueprint, request

from app.errors import ValidationError
from app.routes.api import json_body, success
from app.services.alert_content import generate_alert_packages
from app.services.alerts import AlertService
from app.services.registry import get_services

logger = logging.getLogger('routes.insights')

bp = Blueprint('insights', __name__)

TRENDS = ('worsening', 'stable', 'improving')


# ── Alerts ───────────────────────────────────────────────────────────────────

@bp.route('/api/projects/<project_id>/alerts')
def project_alerts(project_id):
    return success(get_services().alerts.check_project_alerts(project_id))


@bp.route('/api/projects/<project_id>/alerts/check', methods=['POST'])
def check_alerts_with_overrides(project_id):
    overrides = json_body().get('thresholds') or {}
    if not isinstance(overrides, dict):
        raise ValidationError('thresholds must be an object')
    return success(get_services().alerts.check_project_alerts(project_id, overrides))


@bp.route('/api/projects/<project_id>/alerts/enriched')
def enriched_alerts(project_id):
    trend = request.args.get('trend') or 'stable'
    if trend not in TRENDS:
        raise ValidationError(f"Unknown trend '{trend}'", details={'allowed': list(TRENDS)})
    services = get_services()
    result = services.alerts.check_project_alerts(project_id)
    packages = generate_alert_packages(AlertService.flatten(result), {'trend': trend})
    packages.sort(key=lambda p: p['priority_score'], reverse=True)
    return success(packages, summary=result['summary'])


@bp.route('/api/projects/<project_id>/alerts/config', methods=['GET'])
def get_alert_config(project_id):
    return success(get_services().alerts.get_alert_configuration(project_id))


@bp.route('/api/projects/<project_id>/alerts/config', methods=['PUT'])
def update_alert_config(project_id):
    thresholds = json_body().get('thresholds')
    if not isinstance(thresholds, dict) or not thresholds:
        raise ValidationError('thresholds must be a non-empty object')
    updated = get_services().alerts.update_alert_configuration(project_id, thresholds)
    return success(updated, message='Alert configuration updated')


# ── Recommendations ──────────────────────────────────────────────────────────

@bp.route('/api/wallets/<wallet_id>/recommendations', methods=['POST'])
def generate_wallet_recommendations(wallet_id):
    return success(get_services().recommendations.generate_wallet_recommendations(wallet_id), status=201)


@bp.route('/api/wallets/<wallet_id>/recommendations', methods=['GET'])
def wallet_recommendations(wallet_id):
    return success(get_services().recommendations.get_wallet_recommendations(wallet_id))


@bp.route('/api/projects/<project_id>/recommendations', methods=['POST'])
def generate_project_recommendations(project_id):
    return success(get_services().recommendations.generate_project_recommendations(project_id), status=201)


@bp.route('/api/projects/<project_id>/recommendations', methods=['GET'])
def project_recommendations(project_id):
    return success(get_services().recommendations.get_project_recommendations(project_id))


# ── Tasks ────────────────────────────────────────────────────────────────────

@bp.route('/api/tasks/<int:task_id>')
def get_task(task_id):
    return success(get_services().tasks.get_task(task_id))


@bp.route('/api/tasks/<int:task_id>/check', methods=['POST'])
def check_task(task_id):
    return success(get_services().tasks.monitor_task_completion(task_id))


@bp.route('/api/tasks/<int:task_id>/complete', methods=['POST'])
def complete_task(task_id):
    return success(get_services().tasks.mark_task_completed(task_id))


@bp.route('/api/tasks/<int:task_id>/baseline', methods=['POST'])
def reset_baseline(task_id):
    return success(get_services().tasks.set_baseline_metrics(task_id))


@bp.route('/api/tasks/monitor', methods=['POST'])
def run_monitoring():
    """Queue the periodic sweep; ?sync=1 runs it inline."""
    if request.args.get('sync'):
        return success(get_services().tasks.run_periodic_monitoring())
    from app.jobs import enqueue_task_monitoring
    job = enqueue_task_monitoring()
    return success({'job_id': job.id}, status=202)
