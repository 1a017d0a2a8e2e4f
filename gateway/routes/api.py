import logging

import redis
from flask import Blueprint, current_app, jsonify, request

from shared.events import view_declared_event
from shared.state_machine import ViewState
from ..errors import ValidationError, ViewConflict
from ..models import View, is_valid_view_name

logger = logging.getLogger(__name__)

bp = Blueprint('api', __name__, url_prefix='/_api')


@bp.route('/views', methods=['POST'])
def create_view():
    """Declare a view. Its workload starts on first traffic."""
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError('invalid JSON')

    view = View.from_payload(data)

    registry = current_app.registry
    registry.require_synced()

    existing = registry.get(view.name)
    if existing:
        if existing.state == ViewState.DELETING:
            raise ViewConflict(f'view {view.name} is being deleted')
        if existing.subset != view.subset:
            raise ViewConflict(f'view {view.name} already exists with a different subset')
        logger.debug(f"View {view.name} already declared")
        return jsonify(existing.to_dict()), 200

    current_app.provisioner.declare(view)
    created = registry.upsert(view)
    registry.publish(view_declared_event(view.name, view.subset.to_dict()))

    logger.info(f"View created: {view.name} (cluster {view.subset.cluster})")
    return jsonify(created.to_dict()), 201


@bp.route('/views', methods=['GET'])
def list_views():
    """List views in name order."""
    current_app.registry.require_synced()
    return jsonify([v.to_dict() for v in current_app.registry.list()])


@bp.route('/views/<name>', methods=['DELETE'])
def delete_view(name: str):
    """Tear down a view's workload and forget it. Unknown names succeed too."""
    if not is_valid_view_name(name):
        # Nothing in the cluster can carry an invalid name
        return jsonify({'status': 'deleted', 'name': name})

    registry = current_app.registry
    known = registry.get(name) is not None
    if known:
        registry.transition(name, 'delete')

    settle_timeout = current_app.config['API_SETTLE_TIMEOUT']
    if not current_app.cold_start.settle(name, settle_timeout):
        logger.warning(f"Cold start for view {name} still running after {settle_timeout:g}s, deleting anyway")
    current_app.cold_start.forget(name)

    pods_gone = current_app.provisioner.teardown(
        name,
        wait=current_app.config['DELETE_WAIT_FOR_PODS'],
        timeout=current_app.config['DELETE_POD_TIMEOUT']
    )
    if known:
        registry.transition(name, 'remove')
    registry.remove(name)

    logger.info(f"View deleted: {name}")
    body = {'status': 'deleted', 'name': name}
    if not pods_gone:
        body['pods_terminating'] = True
    return jsonify(body)


@bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    registry = current_app.registry

    redis_status = 'disabled'
    if current_app.redis is not None:
        try:
            current_app.redis.ping()
            redis_status = 'connected'
        except redis.RedisError:
            redis_status = 'disconnected'

    status = 'healthy' if registry.synced else 'unhealthy'
    code = 200 if registry.synced else 503

    return jsonify({
        'status': status,
        'registry': 'synced' if registry.synced else 'unsynced',
        'views': len(registry.list()),
        'redis': redis_status
    }), code
