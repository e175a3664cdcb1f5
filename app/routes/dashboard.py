"""
Dashboard routes — project dashboard, export, time series, wallet health,
cache and performance admin.
"""
import logging

from flask import Blueprint, Response, request

from app.errors import NotFoundError, ValidationError
from app.routes.api import int_arg, json_body, success
from app.services.registry import get_services

logger = logging.getLogger('routes.dashboard')

bp = Blueprint('dashboard', __name__)


@bp.route('/api/projects/<project_id>/dashboard')
def project_dashboard(project_id):
    return success(get_services().dashboard.get_project_dashboard(project_id))


@bp.route('/api/projects/<project_id>/export')
def export(project_id):
    fmt = request.args.get('format', 'json')
    report = get_services().dashboard.export_analytics_report(project_id, fmt)
    if report['format'] == 'csv':
        return Response(
            report['data'],
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename=analytics_{project_id}.csv'},
        )
    return success(report)


@bp.route('/api/projects/<project_id>/timeseries/<metric>')
def time_series(project_id, metric):
    days = int_arg('days', 30, minimum=1, maximum=365)
    return success(get_services().dashboard.get_time_series(project_id, metric, days))


@bp.route('/api/wallet-health')
def wallet_health():
    project_id = request.args.get('project_id') or None
    services = get_services()
    if project_id and services.repos.projects.get_project(project_id) is None:
        raise NotFoundError(f'Project {project_id} not found')
    return success(services.dashboard.get_wallet_health_dashboard(project_id))


# ── Performance admin ────────────────────────────────────────────────────────

@bp.route('/api/performance/stats')
def performance_stats():
    return success(get_services().performance.get_performance_stats())


@bp.route('/api/performance/cache/clear', methods=['POST'])
def clear_cache():
    pattern = json_body().get('pattern') or None
    return success({'cleared': get_services().dashboard.clear_cache(pattern)})


@bp.route('/api/projects/<project_id>/cache/warmup', methods=['POST'])
def warmup(project_id):
    services = get_services()
    if services.repos.projects.get_project(project_id) is None:
        raise NotFoundError(f'Project {project_id} not found')
    return success(services.performance.warmup_cache(project_id))


@bp.route('/api/activity', methods=['POST'])
def ingest_activity():
    """Bulk upsert of indexer activity rows."""
    records = json_body().get('records')
    if not isinstance(records, list):
        raise ValidationError('records must be a list')
    result = get_services().performance.batch_update_activity_metrics(records)
    return success(result, status=201)


@bp.route('/api/scores/recalculate', methods=['POST'])
def recalculate_scores():
    data = json_body()
    services = get_services()
    wallet_ids = data.get('wallet_ids')
    if not wallet_ids and data.get('project_id'):
        wallet_ids = [w.id for w in services.repos.projects.list_wallets(data['project_id'], active_only=True)]
    if not isinstance(wallet_ids, list) or not wallet_ids:
        raise ValidationError('wallet_ids or project_id is required')
    result = services.performance.batch_calculate_productivity_scores(wallet_ids)
    logger.info("Recalculated %d scores on request", result['processed'])
    return success({k: v for k, v in result.items() if k != 'scores'})
