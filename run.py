#!/usr/bin/env python3
"""
Entry point for the View Gateway.

Usage:
    python run.py                    # Run the gateway

Environment Variables:
    FLASK_ENV: development or production (default: development)
    PORT: Port to run on (default: 18080)
    GATEWAY_HOSTNAME: Base hostname; views are served on <view>.<hostname>
    VIEW_NAMESPACE: Namespace holding view workloads (default: ui)
    LOG_LEVEL: Logging level (default: INFO, DEBUG in development)
"""
import logging
import os
import sys


def run_gateway():
    """Run the gateway service."""
    from gateway.app import create_app
    from gateway.config import config

    env = os.getenv('FLASK_ENV', 'development')
    if env not in config:
        print(f"Unknown FLASK_ENV: {env}")
        sys.exit(1)

    logging.basicConfig(
        level=config[env].LOG_LEVEL.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    app = create_app(env)
    port = int(os.getenv('PORT', 18080))

    logging.getLogger(__name__).info(f"Starting gateway on port {port}...")
    # Cold starts block their request thread, so serve threaded
    app.run(host='0.0.0.0', port=port, threaded=True, use_reloader=False)


if __name__ == '__main__':
    run_gateway()
