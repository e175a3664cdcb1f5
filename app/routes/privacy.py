"""
Privacy routes — per-wallet mode, project-wide changes, audit trail and
privacy-gated wallet data.
"""
import logging

from flask import Blueprint

from app.errors import NotFoundError, ValidationError
from app.routes.api import current_user_id, int_arg, json_body, success
from app.services.registry import get_services

logger = logging.getLogger('routes.privacy')

bp = Blueprint('privacy', __name__)


@bp.route('/api/wallets/<wallet_id>/privacy', methods=['GET'])
def get_privacy(wallet_id):
    return success(get_services().privacy.get_privacy_preference(wallet_id))


@bp.route('/api/wallets/<wallet_id>/privacy', methods=['PUT'])
def set_privacy(wallet_id):
    data = json_body()
    result = get_services().privacy.set_privacy_preference(
        wallet_id, data.get('privacy_mode'), actor_id=current_user_id(),
    )
    return success(result, message=f"Privacy mode set to {result['privacy_mode']}")


@bp.route('/api/projects/<project_id>/privacy', methods=['PUT'])
def set_project_privacy(project_id):
    data = json_body()
    result = get_services().privacy.set_project_privacy(
        project_id, data.get('privacy_mode'), actor_id=current_user_id(),
    )
    return success(result)


@bp.route('/api/projects/<project_id>/privacy/stats')
def project_privacy_stats(project_id):
    services = get_services()
    if services.repos.projects.get_project(project_id) is None:
        raise NotFoundError(f'Project {project_id} not found')
    return success(services.privacy.get_project_privacy_stats(project_id))


@bp.route('/api/privacy/batch', methods=['POST'])
def batch_privacy():
    updates = json_body().get('updates')
    if not isinstance(updates, list) or not updates:
        raise ValidationError('updates must be a non-empty list of {wallet_id, privacy_mode}')
    result = get_services().privacy.batch_update_privacy(updates, actor_id=current_user_id())
    logger.info("Batch privacy update: %d/%d succeeded", result['succeeded'], result['total'])
    return success(result)


@bp.route('/api/wallets/<wallet_id>/privacy/audit')
def privacy_audit(wallet_id):
    limit = int_arg('limit', 50, minimum=1, maximum=500)
    return success(get_services().privacy.get_privacy_audit_log(wallet_id, limit=limit))


@bp.route('/api/wallets/<wallet_id>/access')
def check_access(wallet_id):
    decision = get_services().privacy.check_data_access(wallet_id, current_user_id(required=False))
    return success(decision.to_dict())


@bp.route('/api/wallets/<wallet_id>/data')
def wallet_data(wallet_id):
    return success(get_services().privacy.get_wallet_data_for(wallet_id, current_user_id(required=False)))


@bp.route('/api/projects/<project_id>/wallets')
def project_wallets(project_id):
    services = get_services()
    wallets = services.repos.projects.list_wallets(project_id)
    visible = services.privacy.filter_wallets_by_privacy(wallets, current_user_id(required=False))
    return success(visible, total=len(visible))
