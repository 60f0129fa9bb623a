# main.py
import logging
import time
import uuid
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from allowlist import AllowList
from auth import CredentialVerifier
from config import Settings, settings
from errors import ProxyError
from pipeline import Pipeline, error_response
from proxy import ForwardingProxy
from ratelimit import AdmissionGate, RedisAdmissionGate
from target import TargetResolver

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)
access_logger = logging.getLogger("access")

HEALTH_BODY = "Secure Proxy Server Running"

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Added to every response unless already present (upstream values win).
SECURITY_HEADERS = {
    "x-content-type-options": "nosniff",
    "x-frame-options": "SAMEORIGIN",
    "referrer-policy": "no-referrer",
    "strict-transport-security": "max-age=15552000; includeSubDomains",
    "cross-origin-resource-policy": "same-origin",
    "x-dns-prefetch-control": "off",
    "x-download-options": "noopen",
    "x-permitted-cross-domain-policies": "none",
}


class RequestIDMiddleware:
    """Propagate or generate an X-Request-ID header for end-to-end tracing."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        req_id = Headers(scope=scope).get("x-request-id") or str(uuid.uuid4())
        scope.setdefault("state", {})["request_id"] = req_id

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)["x-request-id"] = req_id
            await send(message)

        await self.app(scope, receive, send_with_id)


class SecurityHeadersMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in SECURITY_HEADERS.items():
                    if name not in headers:
                        headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_headers)


class AccessLogMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        status = "-"

        async def send_and_record(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_and_record)
        finally:
            access_logger.info(
                "%s %s %s %.1fms rid=%s",
                scope["method"],
                scope["path"],
                status,
                (time.perf_counter() - started) * 1000,
                scope.get("state", {}).get("request_id", "-"),
            )


def build_gate(cfg: Settings, redis_client: aioredis.Redis | None = None):
    if not cfg.rl_enabled:
        return None
    if redis_client is not None:
        return RedisAdmissionGate(redis_client, cfg.rl_max_requests, cfg.rl_window_seconds)
    return AdmissionGate(
        cfg.rl_max_requests,
        cfg.rl_window_seconds,
        max_keys=cfg.rl_max_keys,
        grace=cfg.rl_grace_seconds,
    )


def create_app(
    cfg: Settings = settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    allowlist = AllowList.build(extra=cfg.extra_whitelist_set)

    redis_client: aioredis.Redis | None = None
    if cfg.rl_enabled and cfg.redis_url:
        redis_client = aioredis.from_url(cfg.redis_url, encoding="utf-8", decode_responses=True)

    # Shared HTTP client: connection pools are reused across all proxy requests.
    http_client = httpx.AsyncClient(
        transport=transport,
        verify=True,
        follow_redirects=True,
        max_redirects=cfg.max_redirects,
        timeout=cfg.proxy_timeout,
    )

    pipeline = Pipeline(
        gate=build_gate(cfg, redis_client),
        verifier=CredentialVerifier(
            cfg.jwt_secret.get_secret_value(),
            algorithms=cfg.jwt_algorithms_list,
            audience=cfg.jwt_audience,
            issuer=cfg.jwt_issuer,
            leeway=cfg.jwt_leeway,
        ),
        resolver=TargetResolver(allowlist),
        forwarder=ForwardingProxy(
            http_client,
            max_body_bytes=cfg.max_body_bytes,
            disconnect_poll_interval=cfg.disconnect_poll_interval,
        ),
        trust_forwarded_for=cfg.trust_forwarded_for,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not cfg.jwt_secret.get_secret_value():
            raise RuntimeError("JWT_SECRET must be set.")

        if redis_client is not None:
            await redis_client.ping()  # Fail fast if Redis is unreachable at startup.
            logger.info("Redis rate limiter connected")
        elif cfg.rl_enabled:
            logger.info(
                "In-memory rate limiter: %d requests / %ds per client",
                cfg.rl_max_requests, cfg.rl_window_seconds,
            )
        else:
            logger.warning("Rate limiting disabled (RL_ENABLED=false)")

        logger.info("Allow-list loaded with %d hosts; proxy mounted at %s", len(allowlist), cfg.route_prefix)
        yield

        await http_client.aclose()
        if redis_client is not None:
            await redis_client.aclose()

    app = FastAPI(
        title="Secure Egress Proxy",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.pipeline = pipeline
    app.state.http_client = http_client
    app.state.allowlist = allowlist

    # Plain ASGI middleware: Request.is_disconnected() must see the server's receive.
    # Last added is outermost, so the request id is set before the access line is written.
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        return error_response(exc)

    @app.get("/", response_class=PlainTextResponse)
    async def health() -> str:
        return HEALTH_BODY

    async def proxy_route(request: Request) -> Response:
        return await request.app.state.pipeline.handle(request)

    app.add_api_route(cfg.route_prefix, proxy_route, methods=PROXY_METHODS, include_in_schema=False)
    app.add_api_route(
        cfg.route_prefix + "/{path:path}", proxy_route, methods=PROXY_METHODS, include_in_schema=False
    )
    return app


app = create_app()
