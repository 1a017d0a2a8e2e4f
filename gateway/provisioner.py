import logging
import time

from .errors import OrchestrationUnavailable
from .kubernetes_manager import KubernetesManager, job_is_finished, resource_name
from .models import Endpoint, View

logger = logging.getLogger(__name__)


class WorkloadProvisioner:
    """
    Creates and destroys the backing workload of a view.

    Objects are matched by the view label, never by generated names, so
    retries and gateway restarts reuse what is already there. Callers
    serialize ensure() per view name.
    """

    def __init__(self, kube: KubernetesManager, poll_interval: float = 0.5, job_gone_timeout: float = 10.0):
        self.kube = kube
        self.poll_interval = poll_interval
        self.job_gone_timeout = job_gone_timeout

    def service_endpoint(self, view_name: str) -> Endpoint:
        return Endpoint(
            address=f"{resource_name(view_name)}.{self.kube.namespace}.svc",
            port=self.kube.port,
            ready=False
        )

    def declare(self, view: View) -> bool:
        """Record a view in the cluster without starting its workload."""
        if self.kube.find_services(view.name):
            logger.debug(f"View {view.name} already declared")
            return False
        return self.kube.create_service(view)

    def ensure(self, view: View) -> Endpoint:
        """Create the Service and Job for a view unless they already exist."""
        if not self.kube.find_services(view.name):
            self.kube.create_service(view)

        jobs = self.kube.find_jobs(view.name)
        active = [job for job in jobs if not job_is_finished(job)]
        if active:
            logger.debug(f"Reusing job {active[0].metadata.name} for view {view.name}")
            return self.service_endpoint(view.name)

        for job in jobs:
            logger.info(f"Replacing finished job {job.metadata.name} for view {view.name}")
            self.kube.delete_job(job.metadata.name)
            self._wait_for_job_gone(job.metadata.name)

        self.kube.create_job(view)
        return self.service_endpoint(view.name)

    def teardown(self, view_name: str, wait: bool = False, timeout: float = 30.0) -> bool:
        """
        Delete every Job and Service labelled for the view.

        Already-absent objects count as success. With wait=True, block until
        the view's pods are gone or the timeout passes; returns False if pods
        were still present at the deadline.
        """
        for job in self.kube.find_jobs(view_name):
            self.kube.delete_job(job.metadata.name)
        for svc in self.kube.find_services(view_name):
            self.kube.delete_service(svc.metadata.name)

        if wait:
            return self.wait_for_pods_gone(view_name, timeout)
        return True

    def wait_for_pods_gone(self, view_name: str, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            remaining = self.kube.count_pods(view_name)
            if remaining == 0:
                return True
            if time.monotonic() >= deadline:
                logger.warning(f"{remaining} pods still terminating for view {view_name} after {timeout:g}s")
                return False
            time.sleep(self.poll_interval)

    def _wait_for_job_gone(self, job_name: str):
        deadline = time.monotonic() + self.job_gone_timeout
        while self.kube.job_exists(job_name):
            if time.monotonic() >= deadline:
                raise OrchestrationUnavailable(f"Job {job_name} is still terminating")
            time.sleep(self.poll_interval)
