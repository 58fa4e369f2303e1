"""
Firecracker API client.

Talks to one guest's Firecracker process over its private Unix-domain API
socket. Every request is bounded by a timeout and retried once when the
connection itself fails (socket not yet present, connect refused); any
other failure, or a second transient failure, raises GuestControlError.
"""

import asyncio
import os

import httpx

from fcsaas.exceptions import GuestControlError
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)

# Delay before the single retry of a transient failure
RETRY_DELAY_SECONDS = 0.2


class _SocketMissing(Exception):
    pass


class FirecrackerClient:
    """
    JSON request/response client for the Firecracker REST API.

    Args:
        socket_path: Path of the guest's API socket.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (defaults to the Unix socket).
        tenant_id: Used in error messages only.
    """

    def __init__(
        self,
        socket_path: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        tenant_id: str = "",
    ):
        self.socket_path = socket_path
        self.timeout = timeout
        self.tenant_id = tenant_id
        self._transport = transport

    # --- Transport ---

    def _make_client(self) -> httpx.AsyncClient:
        transport = self._transport or httpx.AsyncHTTPTransport(uds=self.socket_path)
        return httpx.AsyncClient(
            transport=transport,
            base_url="http://localhost",
            timeout=httpx.Timeout(self.timeout),
        )

    async def _send(self, method: str, path: str, payload: dict | None) -> httpx.Response:
        if self._transport is None and not os.path.exists(self.socket_path):
            raise _SocketMissing(self.socket_path)
        async with self._make_client() as client:
            return await client.request(method, path, json=payload)

    async def request(self, method: str, path: str, payload: dict | None = None) -> dict:
        """
        Issue one API call.

        Returns:
            Parsed JSON body (empty dict for 204 responses).

        Raises:
            GuestControlError: On error status, timeout, or repeated
                connection failure.
        """
        for attempt in (1, 2):
            try:
                response = await self._send(method, path, payload)
                break
            except (httpx.ConnectError, _SocketMissing) as e:
                if attempt == 2:
                    raise GuestControlError(
                        f"{method} {path} failed: cannot connect to {self.socket_path} ({e})",
                        self.tenant_id,
                    )
                logger.debug(f"{method} {path}: transient failure ({e}), retrying")
                await asyncio.sleep(RETRY_DELAY_SECONDS)
            except httpx.TimeoutException:
                raise GuestControlError(
                    f"{method} {path} timed out after {self.timeout:g}s", self.tenant_id
                )
            except httpx.HTTPError as e:
                raise GuestControlError(f"{method} {path} failed: {e}", self.tenant_id)

        if response.status_code >= 400:
            try:
                detail = response.json().get("fault_message", response.text)
            except ValueError:
                detail = response.text
            raise GuestControlError(
                f"{method} {path} returned {response.status_code}: {detail.strip()}",
                self.tenant_id,
            )

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    async def put(self, path: str, payload: dict) -> dict:
        return await self.request("PUT", path, payload)

    async def patch(self, path: str, payload: dict) -> dict:
        return await self.request("PATCH", path, payload)

    async def get(self, path: str) -> dict:
        return await self.request("GET", path)

    # --- Pre-boot Configuration ---

    async def set_boot_source(self, kernel_image_path: str, boot_args: str) -> None:
        await self.put(
            "/boot-source",
            {"kernel_image_path": kernel_image_path, "boot_args": boot_args},
        )

    async def set_drive(
        self, drive_id: str, path_on_host: str, is_root_device: bool = False
    ) -> None:
        await self.put(
            f"/drives/{drive_id}",
            {
                "drive_id": drive_id,
                "path_on_host": path_on_host,
                "is_root_device": is_root_device,
                "is_read_only": False,
            },
        )

    async def set_machine_config(self, vcpu_count: int, mem_size_mib: int) -> None:
        await self.put(
            "/machine-config",
            {"vcpu_count": vcpu_count, "mem_size_mib": mem_size_mib, "smt": False},
        )

    async def set_network_interface(
        self,
        iface_id: str,
        host_dev_name: str,
        guest_mac: str,
        rate_limiter: dict | None = None,
    ) -> None:
        payload = {
            "iface_id": iface_id,
            "host_dev_name": host_dev_name,
            "guest_mac": guest_mac,
        }
        if rate_limiter:
            payload["rx_rate_limiter"] = rate_limiter
            payload["tx_rate_limiter"] = rate_limiter
        await self.put(f"/network-interfaces/{iface_id}", payload)

    async def configure_mmds(self, iface_id: str = "eth0") -> None:
        await self.put("/mmds/config", {"network_interfaces": [iface_id], "version": "V2"})

    async def set_metadata(self, metadata: dict) -> None:
        await self.put("/mmds", metadata)

    # --- Actions ---

    async def start_instance(self) -> None:
        await self.put("/actions", {"action_type": "InstanceStart"})

    async def send_ctrl_alt_del(self) -> None:
        await self.put("/actions", {"action_type": "SendCtrlAltDel"})

    async def pause(self) -> None:
        await self.patch("/vm", {"state": "Paused"})

    async def resume(self) -> None:
        await self.patch("/vm", {"state": "Resumed"})

    async def describe_instance(self) -> dict:
        return await self.get("/")

    # --- Snapshots ---

    async def create_snapshot(self, snapshot_path: str, mem_file_path: str) -> None:
        await self.put(
            "/snapshot/create",
            {
                "snapshot_type": "Full",
                "snapshot_path": snapshot_path,
                "mem_file_path": mem_file_path,
            },
        )

    async def load_snapshot(
        self,
        snapshot_path: str,
        mem_file_path: str,
        network_overrides: list[dict] | None = None,
    ) -> None:
        payload = {
            "snapshot_path": snapshot_path,
            "mem_backend": {"backend_type": "File", "backend_path": mem_file_path},
            "enable_diff_snapshots": False,
            "resume_vm": False,
        }
        if network_overrides:
            payload["network_overrides"] = network_overrides
        await self.put("/snapshot/load", payload)

    async def update_drive_path(self, drive_id: str, path_on_host: str) -> None:
        await self.patch(
            f"/drives/{drive_id}", {"drive_id": drive_id, "path_on_host": path_on_host}
        )
