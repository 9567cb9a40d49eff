"""Unit tests for RelayPipeline using httpx.MockTransport."""
import asyncio
import dataclasses

import httpx
import pytest
import structlog
from prometheus_client import REGISTRY

from relay_client.cookies import CookieJar, parse_cookie
from relay_client.dispatch import DispatchOutcome
from relay_client.errors import ErrorCode, RelayTransportError, RequestCancelled
from relay_client.pipeline import ProxyRequest, RelayPipeline

RELAY_HTTP = 'https://hk.relay.example.net/http'


class Recorder:
    """MockTransport handler that records requests and answers per host."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        answer = self.routes[request.url.host]
        if callable(answer):
            return answer(request)
        return answer

    def to(self, host: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]


def _relay_ok(headers=(), content=b'ok'):
    return httpx.Response(200, headers=[('--s', '200'), *headers], content=content)


def _pipeline(config, handler, **kwargs) -> RelayPipeline:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RelayPipeline(config, client, **kwargs)


def _sample(name, labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


# ── Relay path ──


class TestRelay:

    @pytest.mark.asyncio
    async def test_credentialed_get(self, relay_config):
        jar = CookieJar()
        jar.apply([parse_cookie('a=1', 'https://example.com/')])
        recorder = Recorder({'hk.relay.example.net': _relay_ok()})
        pipeline = _pipeline(relay_config, recorder, cookie_jar=jar)

        result = await pipeline.launch(
            ProxyRequest(method='GET', url='https://example.com/api', credentials='include'),
        )

        assert result.outcome is DispatchOutcome.RELAY_HTTP
        sent = recorder.requests[-1]
        assert str(sent.url) == RELAY_HTTP
        assert sent.method == 'GET'
        assert sent.headers['--url'] == 'https://example.com/api'
        assert sent.headers['--cookie'] == 'a=1'
        assert sent.headers['--ver'] == '77'
        assert result.descriptor.status == 200
        assert result.response.content == b'ok'

    @pytest.mark.asyncio
    async def test_default_credentials_withhold_cross_site_cookie(self, relay_config):
        jar = CookieJar()
        jar.apply([parse_cookie('a=1', 'https://example.com/')])
        recorder = Recorder({'hk.relay.example.net': _relay_ok()})
        pipeline = _pipeline(relay_config, recorder, cookie_jar=jar)

        await pipeline.launch(
            ProxyRequest(method='GET', url='https://example.com/api'),
            client_url='https://unrelated.test/page',
        )

        assert '--cookie' not in recorder.requests[-1].headers

    @pytest.mark.asyncio
    async def test_decoded_status_cookies_and_latch(self, relay_config):
        relay = httpx.Response(200, headers=[
            ('--s', '404'),
            ('0-set-cookie', 'x=1'),
            ('1-set-cookie', 'sid=s; HttpOnly'),
            ('--t', '1'),
            ('content-type', 'text/plain'),
        ])
        recorder = Recorder({'hk.relay.example.net': relay})
        pipeline = _pipeline(relay_config, recorder)

        result = await pipeline.launch(ProxyRequest(method='GET', url='https://example.com/x'))

        assert result.descriptor.status == 404
        assert result.descriptor.headers['content-type'] == 'text/plain'
        assert 'set-cookie' not in result.descriptor.headers
        assert [c.name for c in result.cookies] == ['x']
        assert pipeline.latch.legacy is False

        await pipeline.launch(ProxyRequest(method='GET', url='https://example.com/y'))
        assert '--aceh' not in recorder.requests[-1].headers
        assert recorder.requests[0].headers['--aceh'] == '1'

    @pytest.mark.asyncio
    async def test_relay_context_bound_while_sending(self, relay_config):
        seen = {}

        def capture(request):
            seen.update(structlog.contextvars.get_contextvars())
            return _relay_ok()

        pipeline = _pipeline(relay_config, capture)
        pipeline.registry.switch_node('us')

        await pipeline.launch(ProxyRequest(method='GET', url='https://example.com/a#x'))

        assert seen == {'relay_node': 'us', 'target': 'https://example.com/a'}
        assert 'relay_node' not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_post_body_forwarded(self, relay_config):
        recorder = Recorder({'hk.relay.example.net': _relay_ok()})
        pipeline = _pipeline(relay_config, recorder)
        request = ProxyRequest(method='POST', url='https://example.com/form', body=b'a=1&b=2')

        await pipeline.launch(request)

        sent = recorder.requests[-1]
        assert sent.method == 'POST'
        assert sent.content == b'a=1&b=2'
        assert request.body_used is True

    @pytest.mark.asyncio
    async def test_used_body_not_resent(self, relay_config):
        recorder = Recorder({'hk.relay.example.net': _relay_ok()})
        pipeline = _pipeline(relay_config, recorder)
        request = ProxyRequest(
            method='PUT', url='https://example.com/r', body=b'data', body_used=True,
        )

        await pipeline.launch(request)

        assert recorder.requests[-1].content == b''

    @pytest.mark.asyncio
    async def test_switched_node_used(self, relay_config):
        recorder = Recorder({'us.relay.example.net': _relay_ok()})
        pipeline = _pipeline(relay_config, recorder)
        pipeline.registry.switch_node('us')

        await pipeline.launch(ProxyRequest(method='GET', url='https://example.com/'))

        assert str(recorder.requests[-1].url) == 'https://us.relay.example.net/http'

    @pytest.mark.asyncio
    async def test_relay_unreachable(self, relay_config):
        def refuse(request):
            raise httpx.ConnectError('refused', request=request)

        pipeline = _pipeline(relay_config, Recorder({'hk.relay.example.net': refuse}))

        with pytest.raises(RelayTransportError) as exc_info:
            await pipeline.launch(ProxyRequest(method='GET', url='https://example.com/'))
        assert exc_info.value.code is ErrorCode.RELAY_UNREACHABLE
        assert exc_info.value.http_status == 502

    @pytest.mark.asyncio
    async def test_relay_timeout(self, relay_config):
        def slow(request):
            raise httpx.ReadTimeout('slow', request=request)

        pipeline = _pipeline(relay_config, Recorder({'hk.relay.example.net': slow}))

        with pytest.raises(RelayTransportError) as exc_info:
            await pipeline.launch(ProxyRequest(method='GET', url='https://example.com/'))
        assert exc_info.value.code is ErrorCode.RELAY_TIMEOUT
        assert exc_info.value.http_status == 504


# ── Direct path ──


class TestDirect:

    @pytest.mark.asyncio
    async def test_direct_success_skips_relay(self, relay_config):
        recorder = Recorder({
            'cdn.example.com': httpx.Response(200, content=b'lib'),
            'hk.relay.example.net': _relay_ok(),
        })
        pipeline = _pipeline(relay_config, recorder)

        result = await pipeline.launch(
            ProxyRequest(method='GET', url='https://cdn.example.com/lib.js',
                         headers={'accept': '*/*'}),
        )

        assert result.outcome is DispatchOutcome.DIRECT
        assert result.response.content == b'lib'
        assert recorder.to('hk.relay.example.net') == []
        direct = recorder.to('cdn.example.com')[0]
        assert direct.headers['accept'] == '*/*'
        assert '--url' not in direct.headers

    @pytest.mark.asyncio
    async def test_direct_cookies_filtered(self, relay_config):
        direct = httpx.Response(200, headers=[
            ('set-cookie', 'cdn=1; Path=/'),
            ('set-cookie', 'sid=s; HttpOnly'),
        ])
        pipeline = _pipeline(relay_config, Recorder({'cdn.example.com': direct}))

        result = await pipeline.launch(
            ProxyRequest(method='GET', url='https://cdn.example.com/lib.js'),
            client_url='https://www.example.com/',
        )

        assert result.outcome is DispatchOutcome.DIRECT
        assert [(c.name, c.domain) for c in result.cookies] == [('cdn', 'cdn.example.com')]

    @pytest.mark.asyncio
    async def test_non_200_falls_back(self, relay_config):
        recorder = Recorder({
            'cdn.example.com': httpx.Response(404),
            'hk.relay.example.net': _relay_ok(),
        })
        pipeline = _pipeline(relay_config, recorder)
        labels = {'reason': 'direct_fetch_status'}
        before = _sample('relay_direct_fallbacks_total', labels)

        result = await pipeline.launch(
            ProxyRequest(method='GET', url='https://cdn.example.com/lib.js'),
        )

        assert result.outcome is DispatchOutcome.RELAY_HTTP
        assert len(recorder.to('cdn.example.com')) == 1
        assert recorder.to('hk.relay.example.net')[0].headers['--url'] == \
            'https://cdn.example.com/lib.js'
        assert _sample('relay_direct_fallbacks_total', labels) == before + 1

    @pytest.mark.asyncio
    async def test_network_error_falls_back(self, relay_config):
        def refuse(request):
            raise httpx.ConnectError('refused', request=request)

        recorder = Recorder({
            'cdn.example.com': refuse,
            'hk.relay.example.net': _relay_ok(),
        })
        pipeline = _pipeline(relay_config, recorder)

        result = await pipeline.launch(
            ProxyRequest(method='GET', url='https://cdn.example.com/lib.js'),
        )

        assert result.outcome is DispatchOutcome.RELAY_HTTP
        assert result.descriptor.status == 200

    @pytest.mark.asyncio
    async def test_post_never_direct(self, relay_config):
        recorder = Recorder({'hk.relay.example.net': _relay_ok()})
        pipeline = _pipeline(relay_config, recorder)

        result = await pipeline.launch(
            ProxyRequest(method='POST', url='https://cdn.example.com/upload', body=b'x'),
        )

        assert result.outcome is DispatchOutcome.RELAY_HTTP
        assert recorder.to('cdn.example.com') == []


# ── Pass-through ──


class TestRelayOther:

    @pytest.mark.asyncio
    async def test_non_http_passes_through_unmodified(self, relay_config):
        recorder = Recorder({'files.example.com': httpx.Response(200, content=b'file')})
        pipeline = _pipeline(relay_config, recorder)

        result = await pipeline.launch(
            ProxyRequest(method='GET', url='ftp://files.example.com/a.txt',
                         headers={'x-keep': '1'}),
        )

        assert result.outcome is DispatchOutcome.RELAY_OTHER
        sent = recorder.requests[-1]
        assert sent.url.scheme == 'ftp'
        assert sent.headers['x-keep'] == '1'
        assert '--url' not in sent.headers
        assert result.cookies == []

    @pytest.mark.asyncio
    async def test_pass_through_cookies_use_the_gate(self, relay_config):
        config = dataclasses.replace(relay_config, block_third_party_cookies=True)
        answer = httpx.Response(200, headers=[('set-cookie', 'f=1')])
        pipeline = _pipeline(config, Recorder({'files.example.com': answer}))

        same_site = await pipeline.launch(
            ProxyRequest(method='GET', url='ftp://files.example.com/a'),
            client_url='https://www.example.com/',
        )
        cross_site = await pipeline.launch(
            ProxyRequest(method='GET', url='ftp://files.example.com/a'),
            client_url='https://other.test/',
        )

        assert [c.name for c in same_site.cookies] == ['f']
        assert cross_site.cookies == []


# ── Cancellation ──


class TestCancellation:

    @pytest.mark.asyncio
    async def test_already_cancelled(self, relay_config):
        recorder = Recorder({'hk.relay.example.net': _relay_ok()})
        pipeline = _pipeline(relay_config, recorder)
        signal = asyncio.Event()
        signal.set()

        with pytest.raises(RequestCancelled):
            await pipeline.launch(
                ProxyRequest(method='GET', url='https://example.com/', signal=signal),
            )
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_cancelled_in_flight(self, relay_config):
        started = asyncio.Event()

        async def hang(request):
            started.set()
            await asyncio.sleep(30)
            return _relay_ok()

        pipeline = _pipeline(relay_config, hang)
        signal = asyncio.Event()
        task = asyncio.ensure_future(pipeline.launch(
            ProxyRequest(method='GET', url='https://example.com/', signal=signal),
        ))
        await started.wait()
        signal.set()

        with pytest.raises(RequestCancelled) as exc_info:
            await asyncio.wait_for(task, timeout=5)
        assert exc_info.value.http_status == 499

    @pytest.mark.asyncio
    async def test_signal_unused_completes(self, relay_config):
        pipeline = _pipeline(relay_config, Recorder({'hk.relay.example.net': _relay_ok()}))

        result = await pipeline.launch(
            ProxyRequest(method='GET', url='https://example.com/', signal=asyncio.Event()),
        )

        assert result.descriptor.status == 200


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_borrowed_client_left_open(self, relay_config):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: _relay_ok()))
        async with RelayPipeline(relay_config, client):
            pass
        assert client.is_closed is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self, relay_config):
        pipeline = RelayPipeline(relay_config)
        client = pipeline._get_client()
        await pipeline.aclose()
        assert client.is_closed is True
