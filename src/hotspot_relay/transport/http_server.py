"""Starlette HTTP server assembly for the relay's operational API."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from hotspot_relay import __version__
from hotspot_relay.actions.handler import ActionRequest
from hotspot_relay.app import AppContext, get_app_context
from hotspot_relay.engine.consumer import BACKEND_SIGNATURE_HEADER
from hotspot_relay.errors import NotFoundError, RelayError, ValidationFailure
from hotspot_relay.metrics import METRICS_CONTENT_TYPE
from hotspot_relay.middleware.security import RelayAuthMiddleware, RequestLimitsMiddleware
from hotspot_relay.utils.signing import verify_signature

logger = logging.getLogger(__name__)


def _secret(value) -> str | None:
    return value.get_secret_value() if value is not None else None


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationFailure(f"invalid JSON body: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ValidationFailure("JSON body must be an object")
    return data


async def relay_error_handler(request: Request, exc: Exception) -> Response:
    if not isinstance(exc, RelayError):
        raise exc
    if exc.status >= 500:
        logger.error("%s %s failed code=%s: %s", request.method, request.url.path, exc.code, exc)
    return JSONResponse({"ok": False, **exc.to_dict()}, status_code=exc.status)


class RelayApi:
    """Route handlers bound to one ``AppContext``."""

    def __init__(self, ctx: AppContext) -> None:
        self.ctx = ctx

    async def health(self, request: Request) -> Response:
        return JSONResponse({"status": "healthy", "version": __version__})

    async def ready(self, request: Request) -> Response:
        if not await self.ctx.job_store.ping():
            return JSONResponse({"status": "unavailable", "store": False}, status_code=503)
        return JSONResponse({"status": "ready", "store": True})

    async def metrics(self, request: Request) -> Response:
        ctx = self.ctx
        await ctx.metrics.refresh(ctx.job_store, ctx.clock(), ctx.breaker)
        return Response(ctx.metrics.render(), media_type=METRICS_CONTENT_TYPE)

    async def action(self, request: Request) -> Response:
        body = await _json_body(request)
        result = await self.ctx.handler.execute_action(ActionRequest.from_dict(body))
        return JSONResponse(result.to_dict(), status_code=result.status)

    async def push_events(self, request: Request) -> Response:
        consumer_settings = self.ctx.settings.consumer
        secret = _secret(consumer_settings.hmac_secret)
        raw = await request.body()
        if secret or consumer_settings.require_hmac:
            signature = request.headers.get(BACKEND_SIGNATURE_HEADER)
            if not secret or not verify_signature(secret, raw, signature):
                self.ctx.metrics.signature_rejections.labels(source="push").inc()
                logger.warning("pushed events rejected: invalid signature")
                return JSONResponse(
                    {"ok": False, "code": "invalid_signature", "message": "invalid signature"},
                    status_code=401,
                )
        try:
            data = json.loads(raw or b"[]")
        except json.JSONDecodeError as exc:
            raise ValidationFailure(f"invalid JSON body: {exc.msg}") from exc
        if isinstance(data, dict):
            data = data.get("events", [data])
        if not isinstance(data, list):
            raise ValidationFailure("events must be a list")
        results = await self.ctx.consumer.handle_events(data)
        return JSONResponse({"ok": True, "results": results})

    async def list_devices(self, request: Request) -> Response:
        status = request.query_params.get("status") or None
        devices = self.ctx.registry.list_devices(status)
        return JSONResponse({"ok": True, "devices": [device.to_dict() for device in devices]})

    async def create_device(self, request: Request) -> Response:
        device = await self.ctx.devices.provision_device(await _json_body(request))
        return JSONResponse({"ok": True, "device": device.to_dict()}, status_code=201)

    async def delete_device(self, request: Request) -> Response:
        device = await self.ctx.devices.deprovision_device(request.path_params["device_id"])
        return JSONResponse({"ok": True, "device": device.to_dict()})

    async def sync_device(self, request: Request) -> Response:
        device = await self.ctx.devices.sync_device(request.path_params["device_id"])
        return JSONResponse({"ok": True, "device": device.to_dict()})

    async def device_status(self, request: Request) -> Response:
        report = await self.ctx.devices.health_check(request.path_params["device_id"])
        return JSONResponse({"ok": True, **report})

    async def peers_status(self, request: Request) -> Response:
        ctx = self.ctx
        now_s = ctx.clock() // 1000
        window = ctx.settings.reconciler.handshake_online_seconds
        bindings = ctx.bindings.bindings_by_key()
        peers = []
        for peer in await ctx.overlay.list_peers():
            entry = peer.to_dict(now_s, window)
            binding = bindings.get(peer.peer_key)
            entry["deviceId"] = binding.device_id if binding else None
            entry["routerAddress"] = binding.router_address if binding else None
            peers.append(entry)
        return JSONResponse({"ok": True, "peers": peers})

    async def list_bindings(self, request: Request) -> Response:
        bindings = self.ctx.bindings.list_bindings()
        return JSONResponse({"ok": True, "bindings": [b.to_dict() for b in bindings]})

    async def bind_peer(self, request: Request) -> Response:
        body = await _json_body(request)
        peer_key = body.get("publicKey") or body.get("peerKey")
        device_id = body.get("deviceId")
        if not isinstance(peer_key, str) or not isinstance(device_id, str):
            raise ValidationFailure("publicKey and deviceId are required")
        router_address = body.get("routerAddress")
        binding = self.ctx.bindings.bind_peer(
            peer_key, device_id, str(router_address) if router_address else None
        )
        return JSONResponse({"ok": True, "binding": binding.to_dict()})

    async def remove_peer(self, request: Request) -> Response:
        public_key = request.path_params["public_key"]
        removed = await self.ctx.overlay.remove_peer_by_key(public_key)
        unbound = self.ctx.bindings.unbind_peer(public_key)
        if not removed and not unbound:
            raise NotFoundError("peer not found", meta={"publicKey": public_key})
        return JSONResponse({"ok": True, "removed": removed, "unbound": unbound})

    def routes(self) -> list[Route]:
        return [
            Route("/health", endpoint=self.health, methods=["GET"]),
            Route("/ready", endpoint=self.ready, methods=["GET"]),
            Route("/metrics", endpoint=self.metrics, methods=["GET"]),
            Route("/relay/action", endpoint=self.action, methods=["POST"]),
            Route("/relay/events", endpoint=self.push_events, methods=["POST"]),
            Route("/devices", endpoint=self.list_devices, methods=["GET"]),
            Route("/devices", endpoint=self.create_device, methods=["POST"]),
            Route("/devices/{device_id}", endpoint=self.delete_device, methods=["DELETE"]),
            Route("/devices/{device_id}/sync", endpoint=self.sync_device, methods=["POST"]),
            Route("/devices/{device_id}/status", endpoint=self.device_status, methods=["GET"]),
            Route(
                "/internal/wireguard/peers/status", endpoint=self.peers_status, methods=["GET"]
            ),
            Route(
                "/internal/wireguard/peers/bindings", endpoint=self.list_bindings, methods=["GET"]
            ),
            Route("/internal/wireguard/peers/bind", endpoint=self.bind_peer, methods=["POST"]),
            Route(
                "/internal/wireguard/peers/{public_key:path}",
                endpoint=self.remove_peer,
                methods=["DELETE"],
            ),
        ]


def create_http_app(ctx: AppContext | None = None) -> Starlette:
    """Create the relay HTTP application around ``ctx`` (the process context by default)."""
    ctx = ctx or get_app_context()
    settings = ctx.settings
    security = settings.security
    relay_token = _secret(security.relay_token)
    if not relay_token:
        raise RuntimeError("RELAY_TOKEN is required to serve the HTTP API")
    internal_token = _secret(security.internal_token)
    if not internal_token and not security.internal_allowed_ips:
        logger.warning("internal routes are not protected: set RELAY_INTERNAL_TOKEN")

    # Limits run before authentication.
    middleware = [
        Middleware(
            RequestLimitsMiddleware,
            max_body_size_bytes=security.max_body_size_kb * 1024,
            rate_limit_per_ip=security.rate_limit_per_ip,
            trust_forwarded_headers=settings.server.trust_forwarded_headers,
        ),
        Middleware(
            RelayAuthMiddleware,
            relay_token=relay_token,
            api_secret=_secret(security.api_secret),
            internal_token=internal_token,
            internal_allowed_ips=tuple(security.internal_allowed_ips),
            trust_forwarded_headers=settings.server.trust_forwarded_headers,
        ),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting relay HTTP server...")
        if settings.server.enable_background_loops:
            ctx.start_loops()
        logger.info("Relay HTTP server started")
        try:
            yield
        finally:
            logger.info("Stopping relay HTTP server...")
            await ctx.aclose()

    app = Starlette(
        routes=RelayApi(ctx).routes(),
        middleware=middleware,
        exception_handlers={RelayError: relay_error_handler},
        lifespan=lifespan,
    )
    app.state.context = ctx
    return app
