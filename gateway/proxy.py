"""
Relays an admitted request to a view endpoint and streams the answer back.
"""
import logging

import requests
from flask import Request, Response

from .errors import UpstreamUnavailable
from .models import Endpoint

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = {
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailers', 'transfer-encoding', 'upgrade',
}

# Views expect to be addressed as localhost
UPSTREAM_HOST = 'localhost'


def upstream_headers(incoming: Request) -> dict:
    headers = {
        key: value for key, value in incoming.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() != 'host'
    }
    headers['Host'] = UPSTREAM_HOST
    headers['X-Forwarded-Host'] = incoming.host
    if incoming.remote_addr:
        forwarded_for = incoming.headers.get('X-Forwarded-For')
        headers['X-Forwarded-For'] = (
            f"{forwarded_for}, {incoming.remote_addr}" if forwarded_for else incoming.remote_addr
        )
    return headers


def forward_request(
    endpoint: Endpoint,
    incoming: Request,
    connect_timeout: float = 5.0,
    retries: int = 3
) -> Response:
    """Send the incoming request to the endpoint and stream the response."""
    url = f"{endpoint.url}{incoming.path}"
    if incoming.query_string:
        url += '?' + incoming.query_string.decode('latin-1')

    headers = upstream_headers(incoming)
    body = incoming.get_data()

    last_error = None
    for attempt in range(retries + 1):
        try:
            upstream = requests.request(
                incoming.method,
                url,
                headers=headers,
                data=body,
                stream=True,
                allow_redirects=False,
                # No read timeout: views stream long-lived responses
                timeout=(connect_timeout, None)
            )
            break
        except requests.exceptions.ConnectionError as e:
            last_error = e
            logger.debug(f"Connect to {endpoint.url} failed (attempt {attempt + 1}): {e}")
        except requests.exceptions.RequestException as e:
            raise UpstreamUnavailable(f"Service unavailable: {e}") from e
    else:
        raise UpstreamUnavailable(f"Service unavailable: {last_error}")

    response_headers = [
        (key, value) for key, value in upstream.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS
    ]

    def generate():
        try:
            # Raw bytes, so Content-Encoding and Content-Length stay valid
            for chunk in upstream.raw.stream(8192, decode_content=False):
                yield chunk
        finally:
            upstream.close()

    return Response(
        generate(),
        status=upstream.status_code,
        headers=response_headers,
        direct_passthrough=True
    )
