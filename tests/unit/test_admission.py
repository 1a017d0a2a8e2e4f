"""
Unit tests for ColdStartController.
Covers pass-through for ready views, single-flight cold starts and failure recovery.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from gateway.admission import ColdStartController
from gateway.errors import NoRoute, OrchestrationUnavailable, ProvisioningTimeout
from gateway.models import Endpoint, Subset, View
from gateway.provisioner import WorkloadProvisioner
from gateway.readiness import ReadinessWaiter
from gateway.view_registry import ViewRegistry
from shared.state_machine import ViewState


@pytest.fixture
def registry(fake_kube):
    registry = ViewRegistry(fake_kube)
    registry.reconcile()
    return registry


@pytest.fixture
def controller(fake_kube, registry):
    provisioner = WorkloadProvisioner(fake_kube, poll_interval=0.01, job_gone_timeout=1)
    waiter = ReadinessWaiter(fake_kube, registry, poll_interval=0.01)
    controller = ColdStartController(registry, provisioner, waiter, timeout=0.5, max_workers=4)
    yield controller
    controller.shutdown()


def declare(registry, fake_kube, name='test01'):
    fake_kube.add_declared_view(name)
    return registry.upsert(View(name, Subset('dev')))


class TestAdmitReadyView:
    """Ready views pass straight through."""

    def test_ready_view_passes_without_provisioning(self, controller, registry, fake_kube):
        fake_kube.add_running_view('test01')
        registry.reconcile()

        endpoints = controller.admit('test01')

        assert endpoints == [Endpoint('10.0.0.9', 8080)]
        assert fake_kube.jobs_created == []
        assert not controller.in_flight('test01')

    def test_unknown_view(self, controller):
        with pytest.raises(NoRoute):
            controller.admit('nope')

    def test_deleting_view(self, controller, registry, fake_kube):
        declare(registry, fake_kube)
        registry.transition('test01', 'delete')
        with pytest.raises(NoRoute):
            controller.admit('test01')
        assert fake_kube.jobs_created == []


class TestColdStart:
    """Tests for the provisioning path."""

    def test_cold_start_makes_view_ready(self, controller, registry, fake_kube):
        declare(registry, fake_kube)

        endpoints = controller.admit('test01')

        assert endpoints == [Endpoint('10.0.0.7', 8080)]
        assert fake_kube.jobs_created == ['test01']
        view = registry.get('test01')
        assert view.state == ViewState.READY
        assert view.is_ready
        assert not controller.in_flight('test01')

    def test_concurrent_requests_start_one_workload(self, controller, registry, fake_kube):
        """Parallel first requests share a single cold start."""
        declare(registry, fake_kube)
        fake_kube.create_job_event = threading.Event()

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(controller.admit, 'test01') for _ in range(8)]
            # Job creation is held until the cold start is in flight
            while not controller.in_flight('test01'):
                pass
            fake_kube.create_job_event.set()
            results = [f.result(timeout=5) for f in futures]

        assert fake_kube.jobs_created == ['test01']
        assert all(r == [Endpoint('10.0.0.7', 8080)] for r in results)

    def test_second_request_after_ready_skips_cold_start(self, controller, registry, fake_kube):
        declare(registry, fake_kube)
        controller.admit('test01')
        controller.admit('test01')
        assert fake_kube.jobs_created == ['test01']

    def test_reuses_existing_job(self, controller, registry, fake_kube):
        """A job left by a previous gateway process is reused, not duplicated."""
        fake_kube.add_running_view('test01')
        fake_kube.endpoints.pop('test01')
        registry.reconcile()
        assert registry.get('test01').state == ViewState.PROVISIONING

        assert controller.admit('test01') == [Endpoint('10.0.0.7', 8080)]
        assert fake_kube.jobs_created == []


class TestColdStartFailures:
    """Failures surface to waiters and leave the view retryable."""

    def test_timeout_then_retry_succeeds(self, controller, registry, fake_kube):
        declare(registry, fake_kube)
        fake_kube.ready_after_polls = 0

        with pytest.raises(ProvisioningTimeout):
            controller.admit('test01')

        assert registry.get('test01').state == ViewState.PROVISIONING
        assert not controller.in_flight('test01')

        fake_kube.ready_after_polls = 1
        fake_kube.polls.clear()
        assert controller.admit('test01') == [Endpoint('10.0.0.7', 8080)]
        assert fake_kube.jobs_created == ['test01']
        assert registry.get('test01').state == ViewState.READY

    def test_cluster_failure_propagates(self, controller, registry, fake_kube):
        declare(registry, fake_kube)
        fake_kube.fail_with = OrchestrationUnavailable('cluster down')

        with pytest.raises(OrchestrationUnavailable):
            controller.admit('test01')
        assert not controller.in_flight('test01')

    def test_delete_during_cold_start_removes_workload(self, controller, registry, fake_kube, mocker):
        declare(registry, fake_kube)
        original_ensure = controller.provisioner.ensure

        def ensure_then_delete(view):
            endpoint = original_ensure(view)
            registry.transition(view.name, 'delete')
            return endpoint

        mocker.patch.object(controller.provisioner, 'ensure', side_effect=ensure_then_delete)

        with pytest.raises(NoRoute):
            controller.admit('test01')
        assert 'test01' not in fake_kube.jobs
        assert 'test01' not in fake_kube.services


class TestSettle:
    """Tests for ColdStartController.settle."""

    def test_nothing_in_flight(self, controller):
        assert controller.settle('test01', 0.1)

    def test_waits_for_in_flight_cold_start(self, controller, registry, fake_kube):
        declare(registry, fake_kube)
        fake_kube.create_job_event = threading.Event()

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(controller.admit, 'test01')
            while not controller.in_flight('test01'):
                pass
            assert not controller.settle('test01', 0.05)
            fake_kube.create_job_event.set()
            assert controller.settle('test01', 5)
            future.result(timeout=5)

    def test_failed_cold_start_counts_as_settled(self, controller, registry, fake_kube):
        declare(registry, fake_kube)
        fake_kube.ready_after_polls = 0
        with pytest.raises(ProvisioningTimeout):
            controller.admit('test01')
        assert controller.settle('test01', 0.1)


class TestForget:
    """Tests for detaching a cold start when its view is deleted."""

    def test_forget_unknown_view(self, controller):
        controller.forget('nope')
        assert not controller.in_flight('nope')

    def test_redeclared_view_gets_its_own_cold_start(self, controller, registry, fake_kube, mocker):
        """Requests after a delete and re-create never join the old cold start."""
        declare(registry, fake_kube)
        original_ensure = controller.provisioner.ensure
        gates = [threading.Event(), threading.Event()]
        calls = []

        def gated_ensure(view):
            gate = gates[len(calls)]
            calls.append(view)
            gate.wait(5)
            return original_ensure(view)

        mocker.patch.object(controller.provisioner, 'ensure', side_effect=gated_ensure)

        with ThreadPoolExecutor(max_workers=2) as pool:
            old = pool.submit(controller.admit, 'test01')
            while len(calls) < 1:
                time.sleep(0.001)

            # Delete and re-create, as the management API does
            registry.transition('test01', 'delete')
            controller.forget('test01')
            registry.transition('test01', 'remove')
            registry.remove('test01')
            assert not controller.in_flight('test01')
            registry.upsert(View('test01', Subset('dev')))

            new = pool.submit(controller.admit, 'test01')
            while len(calls) < 2:
                time.sleep(0.001)

            gates[0].set()
            old.result(timeout=5)
            # The finished old start leaves the new one registered
            assert controller.in_flight('test01')

            gates[1].set()
            assert new.result(timeout=5) == [Endpoint('10.0.0.7', 8080)]

        assert not controller.in_flight('test01')
        assert fake_kube.jobs_created == ['test01']
