"""
Pytest configuration and fixtures for gateway tests.
"""
import os
import sys
import threading
from types import SimpleNamespace

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from gateway.app import create_app
from gateway.kubernetes_manager import (
    ANNOTATION_CLUSTER,
    ANNOTATION_NAMESPACE,
    resource_name,
    subset_from_metadata,
    view_labels,
)
from gateway.models import Endpoint, ObservedView, Subset, View


def make_object(view_name: str, subset: Subset = None, finished: bool = False, labels: dict = None):
    """Build a Job/Service-shaped object like the Kubernetes client returns."""
    subset = subset or Subset(cluster='dev')
    conditions = [SimpleNamespace(type='Failed', status='True')] if finished else []
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=resource_name(view_name),
            labels=labels if labels is not None else view_labels(view_name),
            annotations={
                ANNOTATION_CLUSTER: subset.cluster,
                ANNOTATION_NAMESPACE: subset.namespace or '',
            },
            deletion_timestamp=None,
        ),
        status=SimpleNamespace(conditions=conditions),
    )


class FakeKubernetes:
    """
    In-memory stand-in for KubernetesManager.

    Jobs become ready after `ready_after_polls` endpoint polls (0 means
    never), so cold starts can be driven deterministically.
    """

    namespace = 'ui'
    port = 8080

    def __init__(self):
        self.services = {}
        self.jobs = {}
        self.endpoints = {}
        self.pods = {}
        self.jobs_created = []
        self.services_created = []
        self.polls = {}
        self.ready_after_polls = 1
        self.fail_with = None
        self.create_job_event = None
        self._lock = threading.Lock()

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    # Helpers for tests

    def add_running_view(self, name: str, subset: Subset = None, ready: bool = True):
        self.services[name] = make_object(name, subset)
        self.jobs[name] = make_object(name, subset)
        self.pods[name] = 1
        self.endpoints[name] = [Endpoint(address='10.0.0.9', port=8080, ready=ready)]

    def add_declared_view(self, name: str, subset: Subset = None):
        self.services[name] = make_object(name, subset)

    # KubernetesManager interface

    def find_services(self, view_name):
        self._check()
        svc = self.services.get(view_name)
        return [svc] if svc else []

    def find_jobs(self, view_name):
        self._check()
        job = self.jobs.get(view_name)
        return [job] if job else []

    def list_endpoints(self, view_name):
        self._check()
        with self._lock:
            if view_name in self.jobs and view_name not in self.endpoints:
                self.polls[view_name] = self.polls.get(view_name, 0) + 1
                if self.ready_after_polls and self.polls[view_name] >= self.ready_after_polls:
                    self.endpoints[view_name] = [Endpoint(address='10.0.0.7', port=8080, ready=True)]
            return list(self.endpoints.get(view_name, []))

    def count_pods(self, view_name):
        self._check()
        return self.pods.get(view_name, 0)

    def list_view_objects(self):
        self._check()
        names = set(self.services) | set(self.jobs)
        observed = {}
        for name in names:
            source = self.services.get(name) or self.jobs.get(name)
            job = self.jobs.get(name)
            observed[name] = ObservedView(
                name=name,
                subset=subset_from_metadata(source.metadata),
                has_service=name in self.services,
                has_active_job=job is not None and not job.status.conditions,
                endpoints=tuple(self.endpoints.get(name, []) if name in self.services else []),
            )
        return observed

    def create_service(self, view: View):
        self._check()
        with self._lock:
            if view.name in self.services:
                return False
            self.services[view.name] = make_object(view.name, view.subset)
            self.services_created.append(view.name)
            return True

    def create_job(self, view: View):
        self._check()
        if self.create_job_event is not None:
            self.create_job_event.wait(5)
        with self._lock:
            if view.name in self.jobs:
                return False
            self.jobs[view.name] = make_object(view.name, view.subset)
            self.pods[view.name] = 1
            self.jobs_created.append(view.name)
            return True

    def delete_job(self, job_name):
        self._check()
        name = job_name[len('view-'):]
        with self._lock:
            existed = self.jobs.pop(name, None) is not None
            self.pods.pop(name, None)
            self.endpoints.pop(name, None)
            self.polls.pop(name, None)
        return existed

    def delete_service(self, service_name):
        self._check()
        name = service_name[len('view-'):]
        with self._lock:
            return self.services.pop(name, None) is not None

    def job_exists(self, job_name):
        self._check()
        return job_name[len('view-'):] in self.jobs


@pytest.fixture
def fake_kube():
    """Fresh in-memory cluster."""
    return FakeKubernetes()


@pytest.fixture
def app(fake_kube):
    """Create application for testing."""
    app = create_app('testing', kube=fake_kube)
    yield app
    app.cold_start.shutdown()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def upstream(mocker):
    """Mock the view workload behind the forwarding stage."""
    response = mocker.MagicMock()
    response.status_code = 200
    response.headers = {'Content-Type': 'text/html', 'Connection': 'keep-alive'}
    response.raw.stream.side_effect = lambda *args, **kwargs: iter([b'<title>hatchling</title>'])
    mock = mocker.patch('gateway.proxy.requests.request', return_value=response)
    return mock
