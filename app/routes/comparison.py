"""
Comparison routes — project vs market, side-by-side projects, competitive
insights and the shielded/transparent breakdown.
"""
import logging

from flask import Blueprint, request

from app.errors import ValidationError
from app.routes.api import int_arg, json_body, success
from app.services.benchmarks import TargetPercentile
from app.services.registry import get_services

logger = logging.getLogger('routes.comparison')

bp = Blueprint('comparison', __name__)

MAX_COMPARED_PROJECTS = 10


@bp.route('/api/projects/<project_id>/comparison')
def compare_to_market(project_id):
    target = TargetPercentile.parse(request.args.get('target'))
    return success(get_services().comparison.compare_project_to_market(project_id, target))


@bp.route('/api/projects/<project_id>/metrics')
def project_metrics(project_id):
    return success(get_services().comparison.get_project_metrics(project_id))


@bp.route('/api/comparison', methods=['POST'])
def compare_projects():
    data = json_body()
    project_ids = data.get('project_ids')
    if not isinstance(project_ids, list) or not all(isinstance(p, str) for p in project_ids):
        raise ValidationError('project_ids must be a list of project ids')
    if len(project_ids) > MAX_COMPARED_PROJECTS:
        raise ValidationError(f'At most {MAX_COMPARED_PROJECTS} projects can be compared at once')
    target = TargetPercentile.parse(data.get('target'))
    return success(get_services().comparison.compare_multiple_projects(project_ids, target))


@bp.route('/api/projects/<project_id>/competitive-insights')
def competitive_insights(project_id):
    target = TargetPercentile.parse(request.args.get('target') or TargetPercentile.P75.value)
    return success(get_services().insights.generate_competitive_insights(project_id, target))


@bp.route('/api/projects/<project_id>/shielded-comparison')
def shielded_comparison(project_id):
    days = int_arg('days', 30, minimum=1, maximum=365)
    return success(get_services().shielded.compare_shielded_vs_transparent(project_id, days=days))
