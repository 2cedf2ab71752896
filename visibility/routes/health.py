"""
Health routes — liveness check and provider circuit breaker status.
"""
import logging

from flask import Blueprint, jsonify

from visibility.services.circuit_breaker import get_all_breakers

logger = logging.getLogger('routes.health')

bp = Blueprint('health', __name__)


@bp.route('/health')
def health_check():
    """Health check endpoint for load balancers."""
    return jsonify({"status": "healthy"}), 200


@bp.route('/api/health')
def service_health():
    """State of every registered provider circuit breaker."""
    breakers = get_all_breakers()
    services = {name: cb.get_health() for name, cb in sorted(breakers.items())}
    degraded = [name for name, health in services.items() if health['state'] != 'closed']
    return jsonify({
        'status': 'degraded' if degraded else 'healthy',
        'degraded': degraded,
        'services': services,
    })


@bp.route('/api/health/<service>/reset', methods=['POST'])
def reset_breaker(service):
    breaker = get_all_breakers().get(service)
    if breaker is None:
        return jsonify({'error': f'Unknown service: {service}'}), 404
    breaker.reset()
    logger.info("Circuit breaker %s reset via API", service)
    return jsonify(breaker.get_health())
