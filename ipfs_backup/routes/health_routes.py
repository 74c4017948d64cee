"""
Health check routes.
"""

from flask import Blueprint, current_app, jsonify

from ipfs_backup.auth import token_required


bp = Blueprint('health', __name__)


@bp.route('/health', methods=['GET'])
def health():
    return {'status': 'healthy'}, 200


@bp.route('/api/health/stores', methods=['GET'])
@token_required
def store_health():
    """
    Probe every IPFS node.

    Returns:
        200 when at least the replication factor of nodes respond, 503 otherwise
    """
    services = current_app.extensions['ipfs_backup']
    nodes = services.store.check_health()
    healthy = sum(1 for node in nodes if node['healthy'])
    required = services.store.replication_factor

    from ipfs_backup.scheduler import get_scheduled_jobs, is_scheduler_running

    status_code = 200 if healthy >= required else 503
    return jsonify({
        'status': 'healthy' if status_code == 200 else 'degraded',
        'healthyNodes': healthy,
        'requiredNodes': required,
        'nodes': nodes,
        'scheduler': {
            'running': is_scheduler_running(),
            'jobs': get_scheduled_jobs()
        }
    }), status_code
