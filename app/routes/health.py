"""
Health routes — liveness plus circuit-breaker, cache and resync status.
"""
import logging

from flask import Blueprint, jsonify

from app.errors import NotFoundError
from app.services.circuit_breaker import get_all_breakers
from app.services.registry import get_services

logger = logging.getLogger('routes.health')

bp = Blueprint('health', __name__)


@bp.route('/health')
def health_check():
    """Liveness probe."""
    return jsonify({"status": "healthy"}), 200


@bp.route('/api/health')
def detailed_health():
    breakers = {name: cb.get_health() for name, cb in get_all_breakers().items()}
    services = get_services()
    degraded = any(b['state'] == 'open' for b in breakers.values())
    return jsonify({
        'success': True,
        'data': {
            'status': 'degraded' if degraded else 'healthy',
            'circuit_breakers': breakers,
            'cache': services.cache.stats(),
            'resync': services.resync.status(),
        },
    }), 200


@bp.route('/api/health/<service>/reset', methods=['POST'])
def reset_circuit(service):
    breaker = get_all_breakers().get(service)
    if breaker is None:
        raise NotFoundError(f'Unknown service: {service}')
    breaker.reset()
    logger.info("Circuit '%s' reset via API", service)
    return jsonify({'success': True, 'data': breaker.get_health()}), 200
