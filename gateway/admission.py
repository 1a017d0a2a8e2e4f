"""
Cold-start admission for view traffic.

Every request for a view passes through ColdStartController.admit() before
it is routed. Ready views pass straight through. Views without a ready
workload get exactly one cold start at a time: the first request starts it
on a shared worker pool, later requests for the same view wait on the same
future. Work is never cancelled when a client goes away, since other
requests may be waiting on it.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Dict, List, Tuple

from shared.events import EventType, cold_start_event
from shared.state_machine import ViewState, TransitionError
from .errors import NoRoute, ProvisioningTimeout
from .models import Endpoint, View
from .provisioner import WorkloadProvisioner
from .readiness import ReadinessWaiter
from .view_registry import ViewRegistry

logger = logging.getLogger(__name__)

# Extra time a waiting request allows for ensure() on top of the readiness bound
WAIT_GRACE_SECONDS = 15.0


class ColdStartController:

    def __init__(
        self,
        registry: ViewRegistry,
        provisioner: WorkloadProvisioner,
        waiter: ReadinessWaiter,
        timeout: float = 60.0,
        max_workers: int = 16
    ):
        self.registry = registry
        self.provisioner = provisioner
        self.waiter = waiter
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cold-start")
        # name -> (view the cold start was started for, its future)
        self._inflight: Dict[str, Tuple[View, Future]] = {}
        self._lock = threading.Lock()

    def admit(self, view_name: str) -> List[Endpoint]:
        """Return the view's ready endpoints, cold-starting it if needed."""
        view = self.registry.get(view_name)
        if view is None or view.state == ViewState.DELETING:
            logger.info(f"No route for view {view_name}")
            raise NoRoute(view_name)

        ready = self.registry.ready_endpoints(view_name)
        if ready:
            return ready

        future = self._join_or_start(view)
        try:
            return future.result(timeout=self.timeout + WAIT_GRACE_SECONDS)
        except FutureTimeout:
            raise ProvisioningTimeout(view_name, self.timeout)

    def in_flight(self, view_name: str) -> bool:
        with self._lock:
            return view_name in self._inflight

    def settle(self, view_name: str, timeout: float) -> bool:
        """Wait for an in-flight cold start to finish. False if it is still running."""
        with self._lock:
            entry = self._inflight.get(view_name)
        if entry is None:
            return True
        _, future = entry
        try:
            future.result(timeout=timeout)
        except FutureTimeout:
            return False
        except Exception:
            # Its outcome belongs to the requests that waited on it
            pass
        return True

    def forget(self, view_name: str):
        """Stop new requests from joining a cold start that is still running."""
        with self._lock:
            if self._inflight.pop(view_name, None) is not None:
                logger.info(f"Detached in-flight cold start for view {view_name}")

    def shutdown(self):
        self._executor.shutdown(wait=False)

    def _join_or_start(self, view: View) -> Future:
        with self._lock:
            entry = self._inflight.get(view.name)
            if entry is None:
                entry = (view, self._executor.submit(self._cold_start, view))
                self._inflight[view.name] = entry
            else:
                logger.debug(f"Joining in-flight cold start for view {view.name}")
            return entry[1]

    def _cold_start(self, view: View) -> List[Endpoint]:
        name = view.name
        start_time = time.monotonic()
        try:
            current = self.registry.get(name)
            if current is None or current.state == ViewState.DELETING:
                raise NoRoute(name)
            if current.is_ready:
                return current.ready_endpoints

            self.registry.transition(name, "provision")
            logger.info(f"Cold start begun for view {name}")
            self.registry.publish(cold_start_event(name, EventType.COLD_START_STARTED, 0.0))

            self.provisioner.ensure(current)
            if not self._still_wanted(name):
                logger.info(f"View {name} was deleted during cold start, removing its workload")
                self.provisioner.teardown(name)
                raise NoRoute(name)

            endpoints = self.waiter.wait_ready(name, self.timeout)
            self._mark_ready(name, endpoints)

            elapsed = time.monotonic() - start_time
            logger.info(f"Cold start complete for view {name} in {elapsed:.1f}s")
            self.registry.publish(cold_start_event(name, EventType.COLD_START_COMPLETED, elapsed))
            return endpoints

        except TransitionError as e:
            logger.info(f"View {name} changed during cold start: {e}")
            raise NoRoute(name) from e
        except NoRoute:
            raise
        except ProvisioningTimeout as e:
            elapsed = time.monotonic() - start_time
            logger.warning(f"Cold start timeout for view {name} after {elapsed:.1f}s")
            self.registry.publish(cold_start_event(name, EventType.COLD_START_FAILED, elapsed, str(e)))
            raise
        except Exception as e:
            elapsed = time.monotonic() - start_time
            logger.error(f"Cold start failed for view {name}: {e}")
            self.registry.publish(cold_start_event(name, EventType.COLD_START_FAILED, elapsed, str(e)))
            raise
        finally:
            with self._lock:
                # A delete may have detached this start and a newer one taken its place
                entry = self._inflight.get(name)
                if entry is not None and entry[0] is view:
                    del self._inflight[name]

    def _still_wanted(self, name: str) -> bool:
        current = self.registry.get(name)
        return current is not None and current.state != ViewState.DELETING

    def _mark_ready(self, name: str, endpoints: List[Endpoint]):
        current = self.registry.get(name)
        if current is None or current.state == ViewState.DELETING:
            raise NoRoute(name)
        if current.state == ViewState.READY:
            # A reconcile saw the workload first
            self.registry.set_endpoints(name, endpoints)
            return
        self.registry.transition(name, "ready", endpoints=endpoints)
