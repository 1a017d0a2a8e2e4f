import ipaddress
import itertools
from typing import Optional

from .errors import NoRoute
from .models import Endpoint
from .view_registry import ViewRegistry


def strip_port(host: str) -> str:
    if host.startswith('['):
        # Bracketed IPv6 literal, with or without a port
        return host[1:host.index(']')] if ']' in host else host
    if host.count(':') == 1:
        return host.rsplit(':', 1)[0]
    return host


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class Router:
    """
    Maps a request Host header to a ready endpoint of its view.

    Pure lookup against the registry: never provisions anything.
    """

    def __init__(self, registry: ViewRegistry, base_hostname: str):
        self.registry = registry
        self.base_hostname = base_hostname.lower()
        self._counter = itertools.count()

    def parse_view_name(self, host: str) -> Optional[str]:
        """Return the view named by a Host header, or None for gateway hosts."""
        if not host:
            return None
        host = strip_port(host.strip().lower())

        if host == self.base_hostname or is_ip_literal(host):
            return None

        suffix = '.' + self.base_hostname
        if host.endswith(suffix):
            return host[:-len(suffix)] or None

        # Any other dotted host: first label names the view
        if '.' in host:
            return host.split('.', 1)[0] or None

        return None

    def resolve(self, host: str) -> Endpoint:
        view_name = self.parse_view_name(host)
        if view_name is None:
            raise NoRoute(host, f"no view in host: {host}")

        endpoints = self.registry.ready_endpoints(view_name)
        if not endpoints:
            raise NoRoute(view_name)

        # Round-robin across ready endpoints
        return endpoints[next(self._counter) % len(endpoints)]
