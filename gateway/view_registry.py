import dataclasses
import logging
import threading
import time
from typing import Dict, List, Optional

import redis

from shared.events import (
    VIEW_EVENTS_CHANNEL,
    Event,
    state_changed_event,
    view_deleted_event,
    view_discovered_event,
)
from shared.state_machine import ViewState, ViewStateMachine
from .errors import NoRoute, OrchestrationUnavailable
from .models import Endpoint, View

logger = logging.getLogger(__name__)


def _copy(view: View) -> View:
    return dataclasses.replace(view, endpoints=list(view.endpoints))


class ViewRegistry:
    """
    Tracks views and their backend state:
    - Rebuilt from labelled cluster objects (the cluster is the source of truth)
    - Merges local in-flight work (provisioning, deleting) with each scan
    - Single write path for view state; everyone else reads via get/list
    """

    def __init__(self, kube, redis_client: redis.Redis = None):
        self.kube = kube
        self.redis = redis_client
        self._views: Dict[str, View] = {}
        # Monotonic time each name was removed, so older scans cannot revive it
        self._removed: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._synced = threading.Event()

    @property
    def synced(self) -> bool:
        return self._synced.is_set()

    def require_synced(self):
        """Refuse to answer from a registry that never matched the cluster."""
        if not self.synced:
            raise OrchestrationUnavailable("view registry has not been reconciled with the cluster yet")

    def get(self, name: str) -> Optional[View]:
        with self._lock:
            view = self._views.get(name)
            return _copy(view) if view else None

    def list(self) -> List[View]:
        with self._lock:
            return [_copy(self._views[name]) for name in sorted(self._views)]

    def upsert(self, view: View) -> View:
        view = _copy(view)
        view.updated_at = time.monotonic()
        with self._lock:
            self._views[view.name] = view
            self._removed.pop(view.name, None)
        return _copy(view)

    def remove(self, name: str) -> Optional[View]:
        with self._lock:
            removed = self._views.pop(name, None)
            self._removed[name] = time.monotonic()
        if removed:
            self.publish(view_deleted_event(name))
        return removed

    def transition(self, name: str, action: str, endpoints: List[Endpoint] = None) -> View:
        """Move a view through the state machine, optionally storing endpoints."""
        with self._lock:
            view = self._views.get(name)
            if view is None:
                raise NoRoute(name)

            sm = ViewStateMachine(view.state)
            guard_context = {"endpoints": endpoints} if endpoints is not None else None
            old_state = sm.state
            new_state = sm.transition(action, guard_context)

            view.state = new_state
            if endpoints is not None:
                view.endpoints = list(endpoints)
            view.updated_at = time.monotonic()
            result = _copy(view)

        if old_state != new_state:
            logger.info(f"View {name}: {old_state.value} -> {new_state.value}")
            self.publish(state_changed_event(name, old_state.value, new_state.value))
        return result

    def set_endpoints(self, name: str, endpoints: List[Endpoint]):
        with self._lock:
            view = self._views.get(name)
            if view is not None:
                view.endpoints = list(endpoints)
                view.updated_at = time.monotonic()

    def ready_endpoints(self, name: str) -> List[Endpoint]:
        with self._lock:
            view = self._views.get(name)
            if view is None or view.state != ViewState.READY:
                return []
            return view.ready_endpoints

    def reconcile(self) -> int:
        """
        Rebuild views from the cluster and merge them with local state.

        Read-only against the cluster. Returns the number of views known
        afterwards.
        """
        scan_started = time.monotonic()
        observed = self.kube.list_view_objects()

        events: List[Event] = []
        with self._lock:
            for name, seen in observed.items():
                current = self._views.get(name)
                if current is None:
                    if self._removed.get(name, 0) >= scan_started:
                        logger.debug(f"Reconcile: skipping {name}, removed after the scan started")
                        continue
                    self._views[name] = View(
                        name=name,
                        subset=seen.subset,
                        state=seen.state,
                        endpoints=list(seen.endpoints),
                        updated_at=scan_started,
                    )
                    events.append(view_discovered_event(name, seen.state.value))
                    continue

                # Local changes newer than the scan win
                if current.updated_at >= scan_started:
                    continue

                new_state = self._merge_state(current.state, seen.state)
                if new_state != current.state:
                    events.append(state_changed_event(name, current.state.value, new_state.value))
                current.state = new_state
                current.subset = seen.subset
                current.endpoints = list(seen.endpoints)

            for name in [n for n in self._views if n not in observed]:
                current = self._views[name]
                if current.state == ViewState.DELETING:
                    continue
                if current.updated_at >= scan_started:
                    continue
                del self._views[name]
                events.append(view_deleted_event(name))

            for name in [n for n, at in self._removed.items() if at < scan_started]:
                del self._removed[name]

            count = len(self._views)

        if not self.synced:
            logger.info(f"View registry synced: {count} views")
        self._synced.set()

        for event in events:
            logger.debug(f"Reconcile: {event.type.value} {event.view_name}")
            self.publish(event)
        return count

    @staticmethod
    def _merge_state(local: ViewState, observed: ViewState) -> ViewState:
        if local == ViewState.DELETING:
            return local
        if observed == ViewState.READY:
            return observed
        if local == ViewState.PROVISIONING:
            return local
        if local == ViewState.READY:
            # Workload went away underneath us
            return ViewStateMachine(local).transition("expire")
        return observed

    def publish(self, event: Event):
        if not self.redis:
            return
        try:
            self.redis.publish(VIEW_EVENTS_CHANNEL, event.to_json())
        except redis.RedisError as e:
            logger.warning(f"Failed to publish {event.type.value} for {event.view_name}: {e}")


class ResyncLoop(threading.Thread):
    """Periodically reconciles the registry; retries faster until first sync."""

    def __init__(self, registry: ViewRegistry, interval: float = 10.0, initial_backoff: float = 0.5):
        super().__init__(name="view-resync", daemon=True)
        self.registry = registry
        self.interval = interval
        self.initial_backoff = initial_backoff
        self._stopping = threading.Event()

    def run(self):
        backoff = self.initial_backoff
        while True:
            wait = self.interval if self.registry.synced else backoff
            if self._stopping.wait(wait):
                return
            try:
                self.registry.reconcile()
                backoff = self.initial_backoff
            except Exception:
                logger.exception("View registry reconcile failed")
                backoff = min(backoff * 2, self.interval)

    def stop(self):
        self._stopping.set()
