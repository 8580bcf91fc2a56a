import asyncio
import logging
import signal

import aiohttp
from aiohttp import web
from yarl import URL

from portkeeper.common.util import stop_on_signals

from . import config


logger = logging.getLogger(__name__)


#: Headers that apply to a single connection and are not forwarded
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


class ReverseProxy:
    """
    Forwards every request to a single upstream server and streams back the response.
    """
    def __init__(self, upstream_url: str, verify_ssl: bool = True):
        self.upstream_url = upstream_url.rstrip("/")
        self.verify_ssl = verify_ssl
        self._session = None

    async def _client_session(self, app):
        connector = aiohttp.TCPConnector(ssl = None if self.verify_ssl else False)
        # Responses are passed through as-is, including any content encoding
        async with aiohttp.ClientSession(
            connector = connector,
            auto_decompress = False
        ) as session:
            self._session = session
            yield
        self._session = None

    def _upstream_headers(self, request: web.Request):
        headers = [
            (name, value)
            for name, value in request.headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS | {"host", "content-length"}
        ]
        if request.remote:
            forwarded_for = request.headers.get("X-Forwarded-For")
            headers = [(n, v) for n, v in headers if n.lower() != "x-forwarded-for"]
            headers.append((
                "X-Forwarded-For",
                f"{forwarded_for}, {request.remote}" if forwarded_for else request.remote
            ))
        return headers

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """
        Forwards the request to the upstream server.
        """
        url = URL(self.upstream_url + str(request.rel_url), encoded = True)
        body = await request.read() if request.body_exists else None
        logger.debug("Forwarding %s %s to %s", request.method, request.rel_url, url)
        try:
            upstream = await self._session.request(
                request.method,
                url,
                headers = self._upstream_headers(request),
                data = body,
                allow_redirects = False
            )
        except aiohttp.ClientError as exc:
            logger.error("Error forwarding %s %s - %s", request.method, request.rel_url, exc)
            raise web.HTTPBadGateway()
        async with upstream:
            response = web.StreamResponse(status = upstream.status, reason = upstream.reason)
            for name, value in upstream.headers.items():
                if name.lower() not in HOP_BY_HOP_HEADERS:
                    response.headers.add(name, value)
            await response.prepare(request)
            async for chunk in upstream.content.iter_any():
                await response.write(chunk)
            await response.write_eof()
        return response

    def application(self) -> web.Application:
        """
        Returns an application that forwards all requests.
        """
        app = web.Application()
        app.cleanup_ctx.append(self._client_session)
        app.router.add_route("*", "/{path:.*}", self.handle)
        return app


async def run(config_obj: config.ProxyConfig):
    """
    Runs the proxy until a termination signal is received.
    """
    proxy = ReverseProxy(config_obj.upstream_url, config_obj.verify_ssl)
    runner = web.AppRunner(
        proxy.application(),
        handle_signals = False,
        shutdown_timeout = config_obj.shutdown_timeout
    )
    await runner.setup()
    try:
        site = web.TCPSite(runner, config_obj.listen_address, config_obj.listen_port)
        await site.start()
        logger.info(
            "Proxy listening on %s:%d [upstream: %s]",
            config_obj.listen_address,
            config_obj.listen_port,
            config_obj.upstream_url
        )
        with stop_on_signals(asyncio.Event(), signal.SIGINT, signal.SIGTERM) as stop:
            await stop.wait()
        logger.info("Shutting down proxy")
    finally:
        await runner.cleanup()
