"""Errors surfaced by the gateway, each mapped to an HTTP status."""


class GatewayError(Exception):
    status_code = 500

    def __init__(self, message: str = None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class ValidationError(GatewayError):
    status_code = 400


class NoRoute(GatewayError):
    status_code = 404

    def __init__(self, view_name: str, message: str = None):
        self.view_name = view_name
        super().__init__(message or f"view not found: {view_name}")


class ViewConflict(GatewayError):
    status_code = 409


class OrchestrationError(GatewayError):
    """The cluster rejected a request for a reason retries will not fix."""
    status_code = 502


class UpstreamUnavailable(GatewayError):
    status_code = 502


class ProvisioningTimeout(GatewayError):
    status_code = 503

    def __init__(self, view_name: str, timeout: float):
        self.view_name = view_name
        self.timeout = timeout
        super().__init__(f"workload for view {view_name} not ready after {timeout:g}s")


class OrchestrationUnavailable(GatewayError):
    """The cluster could not be reached, or kept failing after retries."""
    status_code = 503
