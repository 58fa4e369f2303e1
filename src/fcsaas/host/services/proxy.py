"""
Tenant-aware reverse proxy.

ASGI middleware in front of the admin API. Requests without an
``x-tenant-id`` header pass through to the admin API untouched. With the
header, the value must exactly name an existing tenant. For a running
tenant the request is relayed to ``http://<guest_addr>:<GUEST_SERVICE_PORT>``
with its method, path, query string, headers and streamed body, and the
guest's response is streamed back verbatim. WebSocket upgrades are relayed
both ways with the client's headers.

An empty, malformed, repeated or unknown tenant id answers 404. A tenant
whose guest is not running answers 502. Neither contacts any guest.
"""

import asyncio

import httpx
import websockets
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketState

from fcsaas.exceptions import ProxyBackendUnreachable, TenantNotFound
from fcsaas.models.enums import HealthState, TenantStatus
from fcsaas.models.requests import is_valid_tenant_id
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)

TENANT_HEADER = b"x-tenant-id"
HEALTH_HEADER = b"x-tenant-health"

HOP_BY_HOP = {
    b"connection",
    b"keep-alive",
    b"proxy-authenticate",
    b"proxy-authorization",
    b"te",
    b"trailer",
    b"transfer-encoding",
    b"upgrade",
}


def _tenant_header(scope) -> list[str]:
    return [
        value.decode("latin-1")
        for key, value in scope.get("headers", [])
        if key.lower() == TENANT_HEADER
    ]


def _forward_headers(raw: list[tuple[bytes, bytes]], host: str) -> list[tuple[bytes, bytes]]:
    headers = [
        (key, value)
        for key, value in raw
        if key.lower() not in HOP_BY_HOP
        and key.lower() not in (TENANT_HEADER, b"host")
    ]
    headers.append((b"host", host.encode()))
    return headers


def _upgrade_headers(raw: list[tuple[bytes, bytes]]) -> list[tuple[str, str]]:
    """Client headers for the upstream handshake, minus the handshake fields."""
    return [
        (key.decode("latin-1"), value.decode("latin-1"))
        for key, value in raw
        if key.lower() not in HOP_BY_HOP
        and key.lower() not in (TENANT_HEADER, b"host")
        and not key.lower().startswith(b"sec-websocket-")
    ]


class ProxyRouter:
    """
    ASGI middleware routing tenant traffic to guests.

    Args:
        app: The wrapped admin API application.
        services: HostServices (registry, monitor, config and the shared
            upstream ``proxy_client``).
    """

    def __init__(self, app, services):
        self.app = app
        self.services = services
        cfg = services.config
        self.guest_port = cfg.GUEST_SERVICE_PORT
        self.require_healthy = cfg.PROXY_REQUIRE_HEALTHY
        self.connect_timeout = cfg.PROXY_CONNECT_TIMEOUT_SECONDS

    @property
    def _client(self) -> httpx.AsyncClient:
        return self.services.proxy_client

    async def __call__(self, scope, receive, send):
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        values = _tenant_header(scope)
        if not values:
            await self.app(scope, receive, send)
            return

        tenant_id = values[0]
        record = self._lookup(values)
        if record is None:
            logger.debug(f"Proxy: no tenant for header {tenant_id!r}")
            await self._reject(scope, receive, send, TenantNotFound(tenant_id).to_dict(), 404)
            return

        if record.status != TenantStatus.RUNNING or not record.guest_addr:
            await self._unreachable(scope, receive, send, tenant_id, "refused")
            return

        if self.require_healthy and not self.services.monitor.is_ready(tenant_id):
            body = {"kind": "tenant_not_ready", "message": f"Tenant {tenant_id} is not healthy yet"}
            await self._reject(scope, receive, send, body, 503)
            return

        if scope["type"] == "websocket":
            await self._proxy_websocket(scope, receive, send, tenant_id, record.guest_addr)
        else:
            await self._proxy_http(scope, receive, send, tenant_id, record.guest_addr)

    def _lookup(self, values: list[str]):
        # Exactly one well-formed value naming a known tenant
        if len(set(values)) != 1 or not is_valid_tenant_id(values[0]):
            return None
        return self.services.registry.find(values[0])

    def _health(self, tenant_id: str) -> str:
        observed = self.services.monitor.get(tenant_id)
        return (observed.status if observed else HealthState.UNKNOWN).value

    async def _reject(self, scope, receive, send, body: dict, status_code: int) -> None:
        if scope["type"] == "websocket":
            await send({"type": "websocket.close", "code": 1008, "reason": body["kind"]})
            return
        await JSONResponse(body, status_code=status_code)(scope, receive, send)

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _proxy_http(self, scope, receive, send, tenant_id: str, guest_addr: str) -> None:
        host = f"{guest_addr}:{self.guest_port}"
        url = httpx.URL(
            f"http://{host}{scope.get('raw_path', b'').decode('latin-1') or scope['path']}"
        )
        if scope.get("query_string"):
            url = url.copy_with(query=scope["query_string"])

        async def body():
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    return
                chunk = message.get("body", b"")
                if chunk:
                    yield chunk
                if not message.get("more_body", False):
                    return

        request = self._client.build_request(
            scope["method"],
            url,
            headers=_forward_headers(scope.get("headers", []), host),
            content=body(),
        )

        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException:
            await self._unreachable(scope, receive, send, tenant_id, "timeout")
            return
        except httpx.TransportError as e:
            logger.debug(f"Proxy: {tenant_id} upstream error: {e!r}")
            await self._unreachable(scope, receive, send, tenant_id, "refused")
            return

        try:
            headers = [
                (key, value)
                for key, value in response.headers.raw
                if key.lower() not in HOP_BY_HOP
            ]
            headers.append((HEALTH_HEADER, self._health(tenant_id).encode()))
            await send(
                {
                    "type": "http.response.start",
                    "status": response.status_code,
                    "headers": headers,
                }
            )
            async for chunk in response.aiter_raw():
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except httpx.TransportError as e:
            # Headers already sent; the client sees a truncated body
            logger.warning(f"Proxy: {tenant_id} upstream failed mid-response: {e!r}")
        finally:
            await response.aclose()

    async def _unreachable(self, scope, receive, send, tenant_id: str, reason: str) -> None:
        error = ProxyBackendUnreachable(tenant_id, reason)
        logger.warning(f"Proxy: {error.message}")
        if scope["type"] == "websocket":
            await send(
                {"type": "websocket.close", "code": 1011, "reason": f"{error.kind}: {reason}"}
            )
            return
        response = JSONResponse(
            error.to_dict(),
            status_code=error.status_code,
            headers={"x-tenant-health": self._health(tenant_id)},
        )
        await response(scope, receive, send)

    # =========================================================================
    # WebSocket
    # =========================================================================

    async def _proxy_websocket(
        self, scope, receive, send, tenant_id: str, guest_addr: str
    ) -> None:
        websocket = WebSocket(scope, receive, send)
        target = f"ws://{guest_addr}:{self.guest_port}{scope['path']}"
        if scope.get("query_string"):
            target += "?" + scope["query_string"].decode("latin-1")

        subprotocols = scope.get("subprotocols") or None
        try:
            upstream = await websockets.connect(
                target,
                additional_headers=_upgrade_headers(scope.get("headers", [])),
                user_agent_header=None,
                proxy=None,
                subprotocols=subprotocols,
                open_timeout=self.connect_timeout,
            )
        except (asyncio.TimeoutError, TimeoutError):
            logger.warning(f"Proxy: {tenant_id} websocket upstream timed out")
            await websocket.close(code=1011, reason="proxy_backend_unreachable: timeout")
            return
        except (OSError, websockets.exceptions.InvalidHandshake) as e:
            logger.warning(f"Proxy: {tenant_id} websocket upstream refused: {e}")
            await websocket.close(code=1011, reason="proxy_backend_unreachable: refused")
            return

        await websocket.accept(subprotocol=upstream.subprotocol)
        logger.debug(f"Proxy: websocket relay open for {tenant_id} -> {target}")

        async def client_to_guest():
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        return
                    if message.get("text") is not None:
                        await upstream.send(message["text"])
                    elif message.get("bytes") is not None:
                        await upstream.send(message["bytes"])
            except (WebSocketDisconnect, websockets.exceptions.ConnectionClosed):
                return

        async def guest_to_client():
            try:
                async for message in upstream:
                    if isinstance(message, bytes):
                        await websocket.send_bytes(message)
                    else:
                        await websocket.send_text(message)
            except websockets.exceptions.ConnectionClosed:
                return

        try:
            done, pending = await asyncio.wait(
                [
                    asyncio.create_task(client_to_guest()),
                    asyncio.create_task(guest_to_client()),
                ],
                return_when=asyncio.FIRST_COMPLETED,
            )
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        finally:
            await upstream.close()
            if (
                websocket.client_state != WebSocketState.DISCONNECTED
                and websocket.application_state != WebSocketState.DISCONNECTED
            ):
                await websocket.close()
            logger.debug(f"Proxy: websocket relay closed for {tenant_id}")
