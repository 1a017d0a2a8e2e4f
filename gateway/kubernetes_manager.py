"""
Kubernetes Manager for view workloads.

Wraps the Kubernetes API calls the gateway needs: labelled Jobs and
headless Services per view, EndpointSlices for readiness, and Pods for
delete confirmation. Every call goes through a retry loop with exponential
backoff; errors that survive it become OrchestrationUnavailable.
"""
import logging
import time
from typing import Dict, List

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from .errors import OrchestrationError, OrchestrationUnavailable
from .models import Endpoint, ObservedView, Subset, View

logger = logging.getLogger(__name__)

VIEW_NAME_PREFIX = 'view-'
LABEL_APP = 'app'
APP_NAME = 'lakeview'
LABEL_VIEW_NAME = 'lakeview.yolean.se/view-name'
ANNOTATION_CLUSTER = 'lakeview.yolean.se/cluster'
ANNOTATION_NAMESPACE = 'lakeview.yolean.se/namespace'
LABEL_SERVICE_NAME = 'kubernetes.io/service-name'

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


def resource_name(view_name: str) -> str:
    return f"{VIEW_NAME_PREFIX}{view_name}"


def view_labels(view_name: str) -> Dict[str, str]:
    return {LABEL_APP: APP_NAME, LABEL_VIEW_NAME: view_name}


def view_selector(view_name: str = None) -> str:
    """Label selector for one view, or for every view when name is None."""
    selector = f"{LABEL_APP}={APP_NAME}"
    if view_name:
        selector += f",{LABEL_VIEW_NAME}={view_name}"
    return selector


def subset_annotations(subset: Subset) -> Dict[str, str]:
    return {
        ANNOTATION_CLUSTER: subset.cluster,
        ANNOTATION_NAMESPACE: subset.namespace or '',
    }


def subset_from_metadata(metadata) -> Subset:
    annotations = (metadata.annotations if metadata else None) or {}
    return Subset(
        cluster=annotations.get(ANNOTATION_CLUSTER, ''),
        namespace=annotations.get(ANNOTATION_NAMESPACE) or None,
    )


def job_is_finished(job) -> bool:
    """A Job that completed, failed, or is being deleted can never serve again."""
    if job.metadata and job.metadata.deletion_timestamp:
        return True
    conditions = (job.status.conditions if job.status else None) or []
    return any(
        c.type in ('Complete', 'Failed') and c.status == 'True'
        for c in conditions
    )


def endpoints_from_slice(endpoint_slice, default_port: int) -> List[Endpoint]:
    port = default_port
    if endpoint_slice.ports and endpoint_slice.ports[0].port:
        port = endpoint_slice.ports[0].port

    endpoints = []
    for ep in endpoint_slice.endpoints or []:
        # Serving, not Ready: the Service publishes not-ready addresses
        serving = bool(ep.conditions and ep.conditions.serving)
        for address in ep.addresses or []:
            endpoints.append(Endpoint(address=address, port=port, ready=serving))
    return endpoints


class KubernetesManager:
    """Manages view Jobs and Services in a single namespace."""

    def __init__(
        self,
        namespace: str = 'ui',
        image: str = 'yolean/duckdb-ui:latest',
        image_pull_policy: str = 'IfNotPresent',
        port: int = 8080,
        proxy_image: str = '',
        proxy_configmap: str = 'duckdb-envoy',
        active_deadline_seconds: int = 3600,
        retry_attempts: int = 3,
        retry_backoff: float = 0.5,
        api_client=None
    ):
        self.namespace = namespace
        self.image = image
        self.image_pull_policy = image_pull_policy
        self.port = port
        self.proxy_image = proxy_image
        self.proxy_configmap = proxy_configmap
        self.active_deadline_seconds = active_deadline_seconds
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self._api_client = api_client
        self._core = None
        self._batch = None
        self._discovery = None

    @classmethod
    def from_config(cls, app_config) -> 'KubernetesManager':
        return cls(
            namespace=app_config['VIEW_NAMESPACE'],
            image=app_config['VIEW_IMAGE'],
            image_pull_policy=app_config['VIEW_IMAGE_PULL_POLICY'],
            port=app_config['VIEW_PORT'],
            proxy_image=app_config['VIEW_PROXY_IMAGE'],
            proxy_configmap=app_config['VIEW_PROXY_CONFIGMAP'],
            active_deadline_seconds=app_config['VIEW_ACTIVE_DEADLINE_SECONDS'],
            retry_attempts=app_config['K8S_RETRY_ATTEMPTS'],
            retry_backoff=app_config['K8S_RETRY_BACKOFF'],
        )

    # ==================== Clients ====================

    @property
    def api_client(self):
        """Lazy-load cluster credentials, in-cluster first."""
        if self._api_client is None:
            try:
                config.load_incluster_config()
            except ConfigException:
                try:
                    config.load_kube_config()
                except (ConfigException, OSError) as e:
                    raise OrchestrationUnavailable(f"No Kubernetes credentials available: {e}") from e
            self._api_client = client.ApiClient()
        return self._api_client

    @property
    def core(self) -> client.CoreV1Api:
        if self._core is None:
            self._core = client.CoreV1Api(self.api_client)
        return self._core

    @property
    def batch(self) -> client.BatchV1Api:
        if self._batch is None:
            self._batch = client.BatchV1Api(self.api_client)
        return self._batch

    @property
    def discovery(self) -> client.DiscoveryV1Api:
        if self._discovery is None:
            self._discovery = client.DiscoveryV1Api(self.api_client)
        return self._discovery

    def _call(self, description: str, fn, *args, expect_statuses=(), **kwargs):
        """
        Run an API call, retrying transport errors and retryable statuses.

        ApiExceptions with a status in expect_statuses are re-raised for the
        caller to handle; any other rejection becomes OrchestrationError.
        """
        delay = self.retry_backoff
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return fn(*args, **kwargs)
            except ApiException as e:
                if e.status in expect_statuses:
                    raise
                if e.status not in RETRYABLE_STATUSES:
                    raise OrchestrationError(f"{description} rejected: {e.status} {e.reason}") from e
                error = e
            except (urllib3.exceptions.HTTPError, ConnectionError) as e:
                error = e

            if attempt < self.retry_attempts:
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.retry_attempts}), "
                    f"retrying in {delay:g}s: {error}"
                )
                time.sleep(delay)
                delay *= 2

        logger.error(f"{description} failed after {self.retry_attempts} attempts: {error}")
        raise OrchestrationUnavailable(f"{description} failed: {error}") from error

    # ==================== Manifests ====================

    def build_service_manifest(self, view: View) -> dict:
        return {
            'apiVersion': 'v1',
            'kind': 'Service',
            'metadata': {
                'name': resource_name(view.name),
                'namespace': self.namespace,
                'labels': view_labels(view.name),
                'annotations': subset_annotations(view.subset),
            },
            'spec': {
                'clusterIP': 'None',
                'publishNotReadyAddresses': True,
                'selector': {LABEL_VIEW_NAME: view.name},
                'ports': [{
                    'name': 'http',
                    'port': self.port,
                    'targetPort': self.port,
                }],
            },
        }

    def build_job_manifest(self, view: View) -> dict:
        readiness_probe = {
            'httpGet': {'path': '/', 'port': self.port},
            'initialDelaySeconds': 5,
            'periodSeconds': 5,
        }
        http_port = [{'name': 'http', 'containerPort': self.port}]

        if self.proxy_image:
            # View image behind a proxy sidecar that owns the http port
            containers = [
                {
                    'name': 'duckdb',
                    'image': self.image,
                    'imagePullPolicy': self.image_pull_policy,
                },
                {
                    'name': 'envoy',
                    'image': self.proxy_image,
                    'ports': http_port,
                    'volumeMounts': [{
                        'name': 'envoy-config',
                        'mountPath': '/etc/envoy',
                        'readOnly': True,
                    }],
                    'readinessProbe': readiness_probe,
                },
            ]
            volumes = [{
                'name': 'envoy-config',
                'configMap': {'name': self.proxy_configmap},
            }]
        else:
            containers = [{
                'name': 'view',
                'image': self.image,
                'imagePullPolicy': self.image_pull_policy,
                'ports': http_port,
                'readinessProbe': readiness_probe,
            }]
            volumes = []

        return {
            'apiVersion': 'batch/v1',
            'kind': 'Job',
            'metadata': {
                'name': resource_name(view.name),
                'namespace': self.namespace,
                'labels': view_labels(view.name),
                'annotations': subset_annotations(view.subset),
            },
            'spec': {
                'activeDeadlineSeconds': self.active_deadline_seconds,
                'backoffLimit': 0,
                'template': {
                    'metadata': {'labels': view_labels(view.name)},
                    'spec': {
                        'restartPolicy': 'Never',
                        'containers': containers,
                        'volumes': volumes,
                    },
                },
            },
        }

    # ==================== Queries ====================

    def find_services(self, view_name: str) -> list:
        result = self._call(
            f"list services for view {view_name}",
            self.core.list_namespaced_service,
            self.namespace,
            label_selector=view_selector(view_name),
        )
        return list(result.items)

    def find_jobs(self, view_name: str) -> list:
        result = self._call(
            f"list jobs for view {view_name}",
            self.batch.list_namespaced_job,
            self.namespace,
            label_selector=view_selector(view_name),
        )
        return list(result.items)

    def list_endpoints(self, view_name: str) -> List[Endpoint]:
        result = self._call(
            f"list endpointslices for view {view_name}",
            self.discovery.list_namespaced_endpoint_slice,
            self.namespace,
            label_selector=f"{LABEL_SERVICE_NAME}={resource_name(view_name)}",
        )
        endpoints = []
        for endpoint_slice in result.items:
            endpoints.extend(endpoints_from_slice(endpoint_slice, self.port))
        return endpoints

    def count_pods(self, view_name: str) -> int:
        result = self._call(
            f"list pods for view {view_name}",
            self.core.list_namespaced_pod,
            self.namespace,
            label_selector=view_selector(view_name),
        )
        return len(result.items)

    def list_view_objects(self) -> Dict[str, ObservedView]:
        """Scan the namespace for everything carrying the view labels."""
        services = self._call(
            "list view services",
            self.core.list_namespaced_service,
            self.namespace,
            label_selector=view_selector(),
        ).items
        jobs = self._call(
            "list view jobs",
            self.batch.list_namespaced_job,
            self.namespace,
            label_selector=view_selector(),
        ).items
        slices = self._call(
            "list endpointslices",
            self.discovery.list_namespaced_endpoint_slice,
            self.namespace,
        ).items

        subsets: Dict[str, Subset] = {}
        with_service = set()
        with_active_job = set()

        for svc in services:
            name = (svc.metadata.labels or {}).get(LABEL_VIEW_NAME)
            if not name:
                continue
            subsets[name] = subset_from_metadata(svc.metadata)
            with_service.add(name)

        for job in jobs:
            name = (job.metadata.labels or {}).get(LABEL_VIEW_NAME)
            if not name:
                continue
            subsets.setdefault(name, subset_from_metadata(job.metadata))
            if not job_is_finished(job):
                with_active_job.add(name)

        endpoints: Dict[str, List[Endpoint]] = {}
        for endpoint_slice in slices:
            svc_name = (endpoint_slice.metadata.labels or {}).get(LABEL_SERVICE_NAME, '')
            if not svc_name.startswith(VIEW_NAME_PREFIX):
                continue
            name = svc_name[len(VIEW_NAME_PREFIX):]
            if name not in with_service:
                continue
            endpoints.setdefault(name, []).extend(endpoints_from_slice(endpoint_slice, self.port))

        return {
            name: ObservedView(
                name=name,
                subset=subset,
                has_service=name in with_service,
                has_active_job=name in with_active_job,
                endpoints=tuple(endpoints.get(name, [])),
            )
            for name, subset in subsets.items()
        }

    # ==================== Mutations ====================

    def create_service(self, view: View) -> bool:
        """Create the view's Service. Returns False when it already existed."""
        try:
            self._call(
                f"create service for view {view.name}",
                self.core.create_namespaced_service,
                self.namespace,
                self.build_service_manifest(view),
                expect_statuses=(409,),
            )
        except ApiException:
            logger.debug(f"Service already exists for view {view.name}")
            return False
        logger.info(f"Service created for view {view.name}")
        return True

    def create_job(self, view: View) -> bool:
        """Create the view's Job. Returns False when it already existed."""
        try:
            self._call(
                f"create job for view {view.name}",
                self.batch.create_namespaced_job,
                self.namespace,
                self.build_job_manifest(view),
                expect_statuses=(409,),
            )
        except ApiException:
            logger.debug(f"Job already exists for view {view.name}")
            return False
        logger.info(f"Job created for view {view.name}")
        return True

    def delete_job(self, job_name: str) -> bool:
        """Delete a Job and, in the background, its pods. Absent counts as done."""
        try:
            self._call(
                f"delete job {job_name}",
                self.batch.delete_namespaced_job,
                job_name,
                self.namespace,
                propagation_policy='Background',
                expect_statuses=(404,),
            )
        except ApiException:
            logger.debug(f"Job not found (already deleted): {job_name}")
            return False
        logger.info(f"Job deleted: {job_name}")
        return True

    def delete_service(self, service_name: str) -> bool:
        try:
            self._call(
                f"delete service {service_name}",
                self.core.delete_namespaced_service,
                service_name,
                self.namespace,
                expect_statuses=(404,),
            )
        except ApiException:
            logger.debug(f"Service not found (already deleted): {service_name}")
            return False
        logger.info(f"Service deleted: {service_name}")
        return True

    def job_exists(self, job_name: str) -> bool:
        try:
            self._call(
                f"read job {job_name}",
                self.batch.read_namespaced_job,
                job_name,
                self.namespace,
                expect_statuses=(404,),
            )
        except ApiException:
            return False
        return True
