# pipeline.py
import logging
from dataclasses import dataclass, replace
from typing import Any, Protocol

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from auth import CredentialVerifier
from errors import ClientDisconnected, InternalError, ProxyError, TooManyRequests
from proxy import ForwardingProxy
from ratelimit import RateDecision
from target import Target, TargetResolver

logger = logging.getLogger(__name__)


class Gate(Protocol):
    async def check(self, key: str, now: float | None = None) -> RateDecision: ...


@dataclass(frozen=True)
class RequestContext:
    client_key: str
    claims: dict[str, Any] | None = None
    target: Target | None = None
    decision: RateDecision | None = None


def client_address(request: Request, trust_forwarded_for: bool = False) -> str:
    """Address used as the rate-limit key and sent upstream as X-Forwarded-For."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def error_response(exc: ProxyError) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


class Pipeline:
    """Admission → credential → target → forward, stopping at the first failure."""

    def __init__(
        self,
        gate: Gate | None,
        verifier: CredentialVerifier,
        resolver: TargetResolver,
        forwarder: ForwardingProxy,
        *,
        trust_forwarded_for: bool = False,
    ) -> None:
        self.gate = gate
        self.verifier = verifier
        self.resolver = resolver
        self.forwarder = forwarder
        self.trust_forwarded_for = trust_forwarded_for

    async def _run(self, request: Request, ctx: RequestContext) -> Response:
        if ctx.decision is not None and not ctx.decision.allowed:
            logger.warning("Rate limit exceeded for %s", ctx.client_key)
            raise TooManyRequests()

        claims = self.verifier.verify(request.headers.get("authorization"))
        ctx = replace(ctx, claims=claims)

        target = self.resolver.resolve(request)
        ctx = replace(ctx, target=target)

        return await self.forwarder.forward(request, ctx.target, ctx.client_key)

    async def handle(self, request: Request) -> Response:
        ctx = RequestContext(client_key=client_address(request, self.trust_forwarded_for))
        try:
            if self.gate is not None:
                ctx = replace(ctx, decision=await self.gate.check(ctx.client_key))
            response = await self._run(request, ctx)
        except ProxyError as exc:
            logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.kind, exc.status_code)
            response = error_response(exc)
        except ClientDisconnected:
            logger.info("Client %s disconnected; upstream request cancelled", ctx.client_key)
            # 499 "client closed request" is for the access log only. The server
            # discards sends on a closed connection, so nothing reaches the client.
            return Response(status_code=499)
        except Exception:
            logger.exception("Unhandled error in proxy pipeline")
            response = error_response(InternalError())

        if ctx.decision is not None:
            response.headers.update(ctx.decision.headers())
        return response
