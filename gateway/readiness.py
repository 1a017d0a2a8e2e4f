import logging
import time
from typing import List

from .errors import ProvisioningTimeout
from .kubernetes_manager import KubernetesManager
from .models import Endpoint
from .view_registry import ViewRegistry

logger = logging.getLogger(__name__)


class ReadinessWaiter:
    """Polls a view's EndpointSlices until at least one endpoint is serving."""

    def __init__(self, kube: KubernetesManager, registry: ViewRegistry, poll_interval: float = 0.5):
        self.kube = kube
        self.registry = registry
        self.poll_interval = poll_interval

    def wait_ready(self, view_name: str, timeout: float) -> List[Endpoint]:
        start_time = time.monotonic()
        deadline = start_time + timeout

        while True:
            endpoints = self.kube.list_endpoints(view_name)
            self.registry.set_endpoints(view_name, endpoints)

            ready = [e for e in endpoints if e.ready]
            if ready:
                logger.debug(
                    f"View {view_name} has {len(ready)} ready endpoints "
                    f"after {time.monotonic() - start_time:.1f}s"
                )
                return ready

            if time.monotonic() >= deadline:
                raise ProvisioningTimeout(view_name, timeout)
            time.sleep(self.poll_interval)
