"""Relay client: tunnel page requests through relay nodes.

Example:
    from relay_client import RelayConfig, RelayPipeline, ProxyRequest

    config = RelayConfig.from_env()
    pipeline = RelayPipeline(config)
    result = await pipeline.launch(
        ProxyRequest(method='GET', url='https://example.com/api'),
        target_url='https://example.com/api',
        client_url='https://example.com/',
    )
    result.descriptor.status, result.cookies

    # Serve it as a local forward proxy
    from relay_client.app import create_app
    app = create_app(config)
"""

__version__ = '0.9.0'

from .config import RelayConfig
from .cookies import CookieJar, CookieRecord, parse_cookie
from .dispatch import DispatchOutcome
from .endpoints import EndpointRegistry, EndpointState, NodeSelector
from .errors import ErrorCode, RelayError, RelayTransportError, RequestCancelled
from .pipeline import LaunchResult, ProxyRequest, RelayPipeline
from .transcoder import CompatibilityLatch, DecodedResponse, ResponseDescriptor

__all__ = [
    'CompatibilityLatch',
    'CookieJar',
    'CookieRecord',
    'DecodedResponse',
    'DispatchOutcome',
    'EndpointRegistry',
    'EndpointState',
    'ErrorCode',
    'LaunchResult',
    'NodeSelector',
    'ProxyRequest',
    'RelayConfig',
    'RelayError',
    'RelayPipeline',
    'RelayTransportError',
    'RequestCancelled',
    'ResponseDescriptor',
    'parse_cookie',
]
