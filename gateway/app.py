import logging
import os

import redis
from flask import Flask, Response, jsonify, request

from shared.state_machine import TransitionError
from .admission import ColdStartController
from .config import config
from .errors import GatewayError
from .kubernetes_manager import KubernetesManager
from .provisioner import WorkloadProvisioner
from .proxy import forward_request
from .readiness import ReadinessWaiter
from .router import Router
from .view_registry import ResyncLoop, ViewRegistry

logger = logging.getLogger(__name__)

HEALTH_BODY = 'gateway ok\n'


def create_app(config_name: str = None, kube: KubernetesManager = None, redis_client: redis.Redis = None) -> Flask:
    """Application factory for the gateway."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    if redis_client is None and app.config['REDIS_URL']:
        redis_client = redis.from_url(
            app.config['REDIS_URL'],
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )

    # Initialize services
    kube = kube or KubernetesManager.from_config(app.config)
    registry = ViewRegistry(kube, redis_client)
    provisioner = WorkloadProvisioner(kube, poll_interval=app.config['COLD_START_POLL_INTERVAL'])
    waiter = ReadinessWaiter(kube, registry, poll_interval=app.config['COLD_START_POLL_INTERVAL'])
    cold_start = ColdStartController(
        registry,
        provisioner,
        waiter,
        timeout=app.config['COLD_START_TIMEOUT'],
        max_workers=app.config['COLD_START_WORKERS']
    )

    # Store services on app for access in routes
    app.redis = redis_client
    app.kube = kube
    app.registry = registry
    app.provisioner = provisioner
    app.cold_start = cold_start
    app.router = Router(registry, app.config['GATEWAY_HOSTNAME'])

    register_error_handlers(app)
    register_traffic_routes(app)

    from .routes import api
    app.register_blueprint(api.bp)

    # First sync; the resync loop keeps retrying if the cluster is unreachable
    try:
        registry.reconcile()
    except GatewayError as e:
        logger.error(f"Initial view reconcile failed, routing disabled until it succeeds: {e}")

    app.resync = None
    if app.config['START_RESYNC']:
        app.resync = ResyncLoop(registry, interval=app.config['RESYNC_INTERVAL'])
        app.resync.start()

    return app


def register_error_handlers(app: Flask):

    @app.errorhandler(GatewayError)
    def handle_gateway_error(error: GatewayError):
        return jsonify({'error': error.message}), error.status_code

    @app.errorhandler(TransitionError)
    def handle_transition_error(error: TransitionError):
        return jsonify({'error': error.reason}), 409


def register_traffic_routes(app: Flask):
    """Register the admission stage for view traffic and the gateway's own health page."""

    @app.before_request
    def admit_view_traffic():
        # Management API is always served locally
        if request.path == '/_api' or request.path.startswith('/_api/'):
            return None

        view_name = app.router.parse_view_name(request.host)
        if view_name is None:
            return None

        app.registry.require_synced()
        app.cold_start.admit(view_name)

        endpoint = app.router.resolve(request.host)
        return forward_request(
            endpoint,
            request,
            connect_timeout=app.config['PROXY_CONNECT_TIMEOUT'],
            retries=app.config['PROXY_RETRIES']
        )

    @app.route('/')
    def index():
        """Liveness page for the bare gateway host."""
        return Response(HEALTH_BODY, mimetype='text/plain')
