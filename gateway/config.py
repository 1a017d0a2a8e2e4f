import os


class Config:
    # Routing
    GATEWAY_HOSTNAME = os.getenv('GATEWAY_HOSTNAME', 'localhost')

    # Redis (empty disables lifecycle events)
    REDIS_URL = os.getenv('REDIS_URL', '')

    # View workloads
    VIEW_NAMESPACE = os.getenv('VIEW_NAMESPACE', 'ui')
    VIEW_IMAGE = os.getenv('VIEW_IMAGE', 'yolean/duckdb-ui:latest')
    VIEW_IMAGE_PULL_POLICY = os.getenv('VIEW_IMAGE_PULL_POLICY', 'IfNotPresent')
    VIEW_PORT = int(os.getenv('VIEW_PORT', '8080'))
    VIEW_PROXY_IMAGE = os.getenv('VIEW_PROXY_IMAGE', '')
    VIEW_PROXY_CONFIGMAP = os.getenv('VIEW_PROXY_CONFIGMAP', 'duckdb-envoy')
    VIEW_ACTIVE_DEADLINE_SECONDS = int(os.getenv('VIEW_ACTIVE_DEADLINE_SECONDS', '3600'))

    # Cold start
    COLD_START_TIMEOUT = float(os.getenv('COLD_START_TIMEOUT', '60'))
    COLD_START_POLL_INTERVAL = float(os.getenv('COLD_START_POLL_INTERVAL', '0.5'))
    COLD_START_WORKERS = int(os.getenv('COLD_START_WORKERS', '16'))

    # Registry reconciliation
    START_RESYNC = os.getenv('START_RESYNC', 'true').lower() == 'true'
    RESYNC_INTERVAL = float(os.getenv('RESYNC_INTERVAL', '10'))

    # Kubernetes API retries
    K8S_RETRY_ATTEMPTS = int(os.getenv('K8S_RETRY_ATTEMPTS', '3'))
    K8S_RETRY_BACKOFF = float(os.getenv('K8S_RETRY_BACKOFF', '0.5'))

    # Management API
    API_SETTLE_TIMEOUT = float(os.getenv('API_SETTLE_TIMEOUT', '5'))
    DELETE_WAIT_FOR_PODS = os.getenv('DELETE_WAIT_FOR_PODS', 'false').lower() == 'true'
    DELETE_POD_TIMEOUT = float(os.getenv('DELETE_POD_TIMEOUT', '30'))

    # Forwarding
    PROXY_CONNECT_TIMEOUT = float(os.getenv('PROXY_CONNECT_TIMEOUT', '5'))
    PROXY_RETRIES = int(os.getenv('PROXY_RETRIES', '3'))

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'DEBUG')


class ProductionConfig(Config):
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    DEBUG = False
    GATEWAY_HOSTNAME = 'gateway.test'
    REDIS_URL = ''
    START_RESYNC = False
    COLD_START_TIMEOUT = 2
    COLD_START_POLL_INTERVAL = 0.01
    K8S_RETRY_BACKOFF = 0
    API_SETTLE_TIMEOUT = 1


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
