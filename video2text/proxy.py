"""
Reverse proxy exposing the download and transcription services to clients.

``/api/dv/<path>`` forwards to the download service and ``/api/tv/<path>`` to
the transcription service. Method, path remainder, query, headers (minus
``Host``) and body are passed through; the upstream response is streamed
back with its status and headers, minus hop-by-hop headers.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import requests
from flask import Flask, Response, jsonify, request, stream_with_context

from .errors import ProxyLoopDetected

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = {
    'connection',
    'keep-alive',
    'transfer-encoding',
    'upgrade',
    'proxy-authenticate',
    'proxy-authorization',
}

METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'OPTIONS']


def _request_headers(headers) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() != 'host'}


def _response_headers(headers) -> List[Tuple[str, str]]:
    return [(k, v) for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS]


def _iter_response(resp: requests.Response) -> Iterable[bytes]:
    try:
        for chunk in resp.raw.stream(65536, decode_content=False):
            if chunk:
                yield chunk
    finally:
        resp.close()


def build_target_url(internal_base: str, path: str) -> str:
    return internal_base.rstrip('/') + '/' + path


def forward(session: requests.Session, internal_base: str, path: str) -> Response:
    """
    Forward the current request to ``internal_base`` + ``path``.

    Raises:
        ProxyLoopDetected: If the upstream host is the host serving this request
    """
    target = build_target_url(internal_base, path)

    upstream_host = urlparse(target).hostname
    if upstream_host and upstream_host == request.host.split(':')[0].strip('[]'):
        raise ProxyLoopDetected(upstream_host)

    headers = _request_headers(request.headers)
    body = None
    if request.method not in ('GET', 'HEAD'):
        body = request.stream

    prepared = session.prepare_request(requests.Request(
        method=request.method,
        url=target,
        headers=headers,
        params=list(request.args.items(multi=True)),
        data=body,
    ))
    if 'Content-Length' in headers:
        prepared.headers.pop('Transfer-Encoding', None)
        prepared.headers['Content-Length'] = headers['Content-Length']

    resp = session.send(prepared, stream=True, allow_redirects=False, timeout=None)

    response_headers = _response_headers(resp.headers)
    if 'text/event-stream' in resp.headers.get('content-type', ''):
        response_headers = [(k, v) for k, v in response_headers if k.lower() != 'cache-control']
        response_headers.append(('Cache-Control', 'no-cache'))

    logger.debug(f"{request.method} {target} -> {resp.status_code}")
    return Response(
        stream_with_context(_iter_response(resp)),
        status=resp.status_code,
        headers=response_headers,
        direct_passthrough=True,
    )


def create_app(
    dv_internal: str,
    tv_internal: str,
    session: Optional[requests.Session] = None
) -> Flask:
    """
    Create the proxy application.

    Args:
        dv_internal: Base URL of the download service
        tv_internal: Base URL of the transcription service
        session: Session used for upstream requests

    Returns:
        The Flask application
    """
    app = Flask(__name__)
    upstream = session or requests.Session()
    bases = {'dv': dv_internal, 'tv': tv_internal}

    @app.route('/health', methods=['GET'])
    def health() -> Response:
        return jsonify({'status': 'ok', 'upstreams': bases})

    @app.route('/api/<service>/', defaults={'path': ''}, methods=METHODS)
    @app.route('/api/<service>/<path:path>', methods=METHODS)
    def proxy(service: str, path: str) -> Response:
        internal_base = bases.get(service)
        if internal_base is None:
            return Response(f"Unknown service: {service}", status=404)
        try:
            return forward(upstream, internal_base, path)
        except Exception as e:
            logger.error(f"Proxy {request.method} /api/{service}/{path} failed: {e}")
            return Response(str(e), status=500, mimetype='text/plain')

    return app
