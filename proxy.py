# proxy.py
import asyncio
import logging
from typing import Awaitable, Iterable, TypeVar

import httpx
from fastapi import Request
from fastapi.responses import Response
from starlette.requests import ClientDisconnect

from errors import ClientDisconnected, InvalidURL, PayloadTooLarge, UpstreamError
from target import TARGET_HEADER, Target

logger = logging.getLogger(__name__)

T = TypeVar("T")

_HOP_BY_HOP_HEADERS = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "proxy-connection", "te", "trailer", "transfer-encoding", "upgrade",
})

# Identity-leaking headers, the proxy's own credentials and routing header,
# and headers httpx derives from the target and body.
_STRIP_REQUEST_HEADERS = _HOP_BY_HOP_HEADERS | {
    "cookie", "referer", "origin",
    "authorization", TARGET_HEADER,
    "host", "content-length",
    "x-forwarded-for", "x-forwarded-proto",
}
_STRIP_RESPONSE_HEADERS = _HOP_BY_HOP_HEADERS | {"set-cookie", "x-powered-by"}


def _connection_tokens(headers: list[tuple[str, str]]) -> set[str]:
    """Extra hop-by-hop header names listed in Connection."""
    return {
        token.strip().lower()
        for k, v in headers
        if k.lower() == "connection"
        for token in v.split(",")
        if token.strip()
    }


def build_upstream_headers(
    headers: Iterable[tuple[str, str]], client_ip: str, scheme: str
) -> list[tuple[str, str]]:
    items = list(headers)
    drop = _STRIP_REQUEST_HEADERS | _connection_tokens(items)
    out = [(k, v) for k, v in items if k.lower() not in drop]
    if not any(k.lower() == "accept-encoding" for k, _ in out):
        # Body bytes are relayed as received; don't let httpx ask for gzip on the client's behalf.
        out.append(("accept-encoding", "identity"))
    out.append(("x-forwarded-for", client_ip))
    out.append(("x-forwarded-proto", scheme))
    return out


def sanitize_response_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    items = list(headers)
    drop = _STRIP_RESPONSE_HEADERS | _connection_tokens(items)
    return [(k, v) for k, v in items if k.lower() not in drop]


class ForwardingProxy:
    """Relays a request to a resolved Target over a shared httpx client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_body_bytes: int = 10 * 1024 * 1024,
        disconnect_poll_interval: float | None = 0.5,
    ) -> None:
        self.client = client
        self.max_body_bytes = max_body_bytes
        self.disconnect_poll_interval = disconnect_poll_interval

    async def _read_body(self, request: Request) -> bytes:
        # Enforce body size limit before reading into memory.
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_body_bytes:
            raise PayloadTooLarge()

        body = bytearray()
        try:
            async for chunk in request.stream():
                body.extend(chunk)
                if len(body) > self.max_body_bytes:
                    raise PayloadTooLarge()
        except ClientDisconnect:
            raise ClientDisconnected()
        return bytes(body)

    async def _dispatch(self, upstream_req: httpx.Request, target: Target) -> tuple[httpx.Response, bytes]:
        try:
            upstream = await self.client.send(upstream_req, stream=True)
            try:
                raw = b"".join([chunk async for chunk in upstream.aiter_raw()])
            finally:
                await upstream.aclose()
        except httpx.HTTPError as exc:
            logger.error(
                "Upstream %s %s failed: %s: %s",
                upstream_req.method, target.hostname, type(exc).__name__, exc,
            )
            raise UpstreamError()
        return upstream, raw

    async def _until_disconnected(self, request: Request) -> None:
        while not await request.is_disconnected():
            await asyncio.sleep(self.disconnect_poll_interval)

    async def _unless_disconnected(self, request: Request, aw: Awaitable[T]) -> T:
        """Await ``aw``; cancel it and raise ClientDisconnected if the caller leaves first."""
        if not self.disconnect_poll_interval:
            return await aw

        upstream = asyncio.ensure_future(aw)
        watcher = asyncio.ensure_future(self._until_disconnected(request))
        try:
            done, _ = await asyncio.wait({upstream, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            upstream.cancel()
            watcher.cancel()
            raise

        if upstream in done:
            watcher.cancel()
            return upstream.result()

        upstream.cancel()
        await asyncio.gather(upstream, return_exceptions=True)
        watcher.result()
        raise ClientDisconnected()

    async def forward(self, request: Request, target: Target, client_ip: str) -> Response:
        body = await self._read_body(request)

        headers = build_upstream_headers(request.headers.items(), client_ip, request.url.scheme)
        try:
            upstream_req = self.client.build_request(
                method=request.method,
                url=target.url,
                headers=headers,
                content=body,
            )
        except httpx.InvalidURL:
            raise InvalidURL()

        upstream, raw = await self._unless_disconnected(request, self._dispatch(upstream_req, target))

        if upstream.status_code >= 500:
            logger.warning(
                "Upstream %s returned %s for %s", target.hostname, upstream.status_code, request.method
            )

        response = Response(content=raw, status_code=upstream.status_code)
        for k, v in sanitize_response_headers(upstream.headers.multi_items()):
            if k.lower() == "content-length":
                # Length of the relayed bytes is already set; HEAD keeps the upstream value.
                if request.method == "HEAD":
                    response.headers["content-length"] = v
                continue
            response.headers.append(k, v)
        return response
