import re
import time
from dataclasses import dataclass, field
from typing import List, Optional

from shared.state_machine import ViewState
from .errors import ValidationError


NAME_PATTERN = re.compile(r'^[a-z][a-z0-9-]*[a-z0-9]$')
NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 8

# Placement refinements reserved for later use
RESERVED_SUBSET_KEYS = ('pod', 'container', 'range')


def validate_view_name(name) -> str:
    """Check a view name against the naming rules and return it."""
    if not isinstance(name, str) or not name:
        raise ValidationError('name is required')
    if len(name) < NAME_MIN_LENGTH or len(name) > NAME_MAX_LENGTH:
        raise ValidationError(
            f'name must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters, got {len(name)}'
        )
    if not NAME_PATTERN.match(name):
        raise ValidationError(f'name must match {NAME_PATTERN.pattern}')
    return name


def is_valid_view_name(name) -> bool:
    try:
        validate_view_name(name)
    except ValidationError:
        return False
    return True


@dataclass(frozen=True)
class Subset:
    cluster: str
    namespace: Optional[str] = None

    @classmethod
    def from_dict(cls, data) -> 'Subset':
        if not isinstance(data, dict):
            raise ValidationError('subset must be an object')

        for key in RESERVED_SUBSET_KEYS:
            if key in data:
                raise ValidationError(f'subset.{key} is not supported yet')

        cluster = data.get('cluster')
        if not isinstance(cluster, str) or not cluster:
            raise ValidationError('subset.cluster is required')

        namespace = data.get('namespace')
        if namespace is not None and not isinstance(namespace, str):
            raise ValidationError('subset.namespace must be a string')

        return cls(cluster=cluster, namespace=namespace or None)

    def to_dict(self) -> dict:
        data = {'cluster': self.cluster}
        if self.namespace:
            data['namespace'] = self.namespace
        return data


@dataclass(frozen=True)
class Endpoint:
    address: str
    port: int
    ready: bool = True

    @property
    def url(self) -> str:
        host = f'[{self.address}]' if ':' in self.address else self.address
        return f'http://{host}:{self.port}'

    def to_dict(self) -> dict:
        return {'address': self.address, 'port': self.port, 'ready': self.ready}


@dataclass
class View:
    name: str
    subset: Subset
    state: ViewState = ViewState.ABSENT
    endpoints: List[Endpoint] = field(default_factory=list)
    # Monotonic time of the last local change, used when merging scans
    updated_at: float = field(default_factory=time.monotonic, compare=False)

    @classmethod
    def from_payload(cls, data) -> 'View':
        """Build a declared view from a management API request body."""
        if not isinstance(data, dict):
            raise ValidationError('request body must be a JSON object')
        name = validate_view_name(data.get('name'))
        if 'subset' not in data:
            raise ValidationError('subset is required')
        return cls(name=name, subset=Subset.from_dict(data['subset']))

    @property
    def ready_endpoints(self) -> List[Endpoint]:
        return [e for e in self.endpoints if e.ready]

    @property
    def is_ready(self) -> bool:
        return self.state == ViewState.READY and bool(self.ready_endpoints)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'subset': self.subset.to_dict(),
            'state': self.state.value,
            'ready': self.is_ready,
        }


@dataclass(frozen=True)
class ObservedView:
    """What one reconciliation scan saw in the cluster for a view name."""
    name: str
    subset: Subset
    has_service: bool = False
    has_active_job: bool = False
    endpoints: tuple = ()

    @property
    def state(self) -> ViewState:
        if any(e.ready for e in self.endpoints):
            return ViewState.READY
        if self.has_active_job:
            return ViewState.PROVISIONING
        return ViewState.ABSENT
