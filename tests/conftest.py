"""Shared pytest fixtures and fakes for fcsaas tests.

Nothing here needs root, KVM or a Firecracker binary:

- FakeLauncher stands in for Firecracker processes (pids are counters and
  "spawning" just creates the API socket file).
- FakeHypervisor answers the Firecracker REST API through
  ``httpx.MockTransport``, one VM state per API socket.
- FakeIptables keeps rule chains in memory and can evaluate FORWARD for a
  simulated packet.
- FakeLinks tracks TAP devices and their addresses.
- FakeGuests answers guest traffic (health checks and proxied requests)
  by guest IP.
"""

import asyncio
import json
import os
import signal
import subprocess

import httpx
import pytest

from fcsaas.firecracker.client import FirecrackerClient
from fcsaas.host.app import build_services, start_services, stop_services
from fcsaas.host.config import HostConfig
from fcsaas.host.services.disks import TenantStorage, render_env
from fcsaas.host.services.network import FirewallRule, LinuxNetworkIsolation
from fcsaas.models.enums import NetworkBackend

# ============================================================================
# Process Launcher
# ============================================================================


class FakeLauncher:
    """Pretend Firecracker processes."""

    def __init__(self):
        self.alive: dict[int, str] = {}  # pid -> socket path
        self.spawned: list[tuple[str, int]] = []
        self.signals: list[tuple[int, int]] = []
        self.immortal: set[int] = set()
        self.spawn_error: Exception | None = None
        self.create_socket = True
        self._next_pid = 4000

    def spawn(self, tenant_id: str, socket_path: str, log_path: str) -> int:
        if self.spawn_error:
            raise self.spawn_error
        pid = self._next_pid
        self._next_pid += 1
        self.alive[pid] = socket_path
        if self.create_socket:
            open(socket_path, "w").close()
        self.spawned.append((tenant_id, pid))
        return pid

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def send_signal(self, pid: int, sig: int) -> None:
        self.signals.append((pid, sig))
        if pid not in self.immortal:
            self.exit(pid)

    def kill(self, pid: int) -> None:
        self.send_signal(pid, signal.SIGKILL)

    def exit(self, pid: int) -> None:
        """Simulate the process exiting on its own."""
        self.alive.pop(pid, None)

    def pid_for_socket(self, socket_path: str) -> int | None:
        for pid, sock in self.alive.items():
            if sock == socket_path:
                return pid
        return None

    def find_guest_processes(self, socket_dir: str) -> list[tuple[int, str]]:
        socket_dir = os.path.abspath(socket_dir)
        return [
            (pid, sock)
            for pid, sock in self.alive.items()
            if os.path.dirname(os.path.abspath(sock)) == socket_dir
        ]


# ============================================================================
# Hypervisor API
# ============================================================================


class FakeVM:
    def __init__(self):
        self.calls: list[tuple[str, str, dict | None]] = []
        self.state = "Not started"
        self.metadata: dict | None = None
        self.boot_args: str | None = None
        self.cold_boots = 0
        self.restored_from: str | None = None

    def paths(self) -> list[str]:
        return [f"{method} {path}" for method, path, _ in self.calls]


class FakeHypervisor:
    """
    Firecracker API double.

    ``cold_boots`` counts InstanceStart actions across every VM: it is the
    guest-visible side effect of running the guest's startup path. A
    snapshot carries the counter of the VM it was taken from, and a restore
    resumes that memory image without incrementing anything.
    """

    def __init__(self, launcher: FakeLauncher):
        self.launcher = launcher
        self.vms: dict[int, FakeVM] = {}  # keyed by pid
        self.cold_boots = 0
        self.fail: dict[str, int] = {}  # "METHOD /path" -> status code
        self.hang: set[str] = set()  # "METHOD /path" never answers
        self.ignore_ctrl_alt_del = False

    def vm(self, socket_path: str) -> FakeVM | None:
        """VM state of the live process serving ``socket_path``."""
        pid = self.launcher.pid_for_socket(socket_path)
        if pid is None:
            return None
        return self.vms.setdefault(pid, FakeVM())

    def client_factory(self, socket_path: str, timeout: float, tenant_id: str):
        return FirecrackerClient(
            socket_path,
            timeout=timeout,
            transport=httpx.MockTransport(self._handler(socket_path)),
            tenant_id=tenant_id,
        )

    def _handler(self, socket_path: str):
        async def handle(request: httpx.Request) -> httpx.Response:
            vm = self.vm(socket_path)
            if vm is None:
                raise httpx.ConnectError("Connection refused", request=request)
            body = json.loads(request.content) if request.content else None
            key = f"{request.method} {request.url.path}"
            vm.calls.append((request.method, request.url.path, body))

            if key in self.hang:
                await asyncio.sleep(3600)
            if key in self.fail:
                return httpx.Response(
                    self.fail[key], json={"fault_message": f"injected failure on {key}"}
                )
            return self._apply(socket_path, vm, request.method, request.url.path, body)

        return handle

    def _apply(self, socket_path, vm: FakeVM, method: str, path: str, body):
        if method == "PUT" and path == "/boot-source":
            vm.boot_args = body["boot_args"]
        elif method == "PUT" and path == "/mmds":
            vm.metadata = body
        elif method == "PUT" and path == "/actions":
            action = body["action_type"]
            if action == "InstanceStart":
                vm.state = "Running"
                vm.cold_boots += 1
                self.cold_boots += 1
            elif action == "SendCtrlAltDel" and not self.ignore_ctrl_alt_del:
                pid = self.launcher.pid_for_socket(socket_path)
                if pid is not None:
                    self.launcher.exit(pid)
        elif method == "PATCH" and path == "/vm":
            vm.state = "Running" if body["state"] == "Resumed" else body["state"]
        elif method == "PUT" and path == "/snapshot/create":
            with open(body["snapshot_path"], "w") as f:
                json.dump({"cold_boots": vm.cold_boots, "metadata": vm.metadata}, f)
            with open(body["mem_file_path"], "wb") as f:
                f.write(b"\0" * 4096)
        elif method == "PUT" and path == "/snapshot/load":
            with open(body["snapshot_path"]) as f:
                state = json.load(f)
            vm.cold_boots = state["cold_boots"]
            vm.restored_from = body["snapshot_path"]
            vm.state = "Paused"
        elif method == "GET" and path == "/":
            return httpx.Response(200, json={"id": "fake", "state": vm.state})
        return httpx.Response(204)


# ============================================================================
# Network
# ============================================================================


class FakeIptables:
    """In-memory iptables with FORWARD chain evaluation."""

    def __init__(self):
        self.chains: dict[tuple[str, str], list[tuple[str, ...]]] = {}
        self.fail_on: set[tuple[str, ...]] = set()

    def _chain(self, rule: FirewallRule) -> list[tuple[str, ...]]:
        return self.chains.setdefault((rule.table, rule.chain), [])

    def _check_failure(self, rule: FirewallRule) -> None:
        if rule.spec in self.fail_on:
            raise subprocess.CalledProcessError(
                1, ["iptables"], stderr=f"iptables: injected failure for {rule}"
            )

    def exists(self, rule: FirewallRule) -> bool:
        return rule.spec in self._chain(rule)

    def insert(self, rule: FirewallRule, position: int = 1) -> None:
        self._check_failure(rule)
        chain = self._chain(rule)
        if position > len(chain) + 1:
            raise subprocess.CalledProcessError(
                1, ["iptables"], stderr="iptables: Index of insertion too big."
            )
        chain.insert(position - 1, rule.spec)

    def append(self, rule: FirewallRule) -> None:
        self._check_failure(rule)
        self._chain(rule).append(rule.spec)

    def delete(self, rule: FirewallRule) -> None:
        chain = self._chain(rule)
        if rule.spec not in chain:
            raise subprocess.CalledProcessError(
                1, ["iptables"], stderr="iptables: Bad rule (does a matching rule exist?)."
            )
        chain.remove(rule.spec)

    def rules(self, table: str, chain: str) -> list[tuple[str, ...]]:
        return list(self.chains.get((table, chain), []))

    def forward_verdict(self, in_dev: str, out_dev: str, established: bool = False) -> str:
        """First matching FORWARD target for a packet (policy ACCEPT)."""
        for spec in self.chains.get(("filter", "FORWARD"), []):
            opts = _parse_spec(spec)
            if not _iface_matches(opts.get("-i"), in_dev):
                continue
            if not _iface_matches(opts.get("-o"), out_dev):
                continue
            if "--state" in opts and not established:
                continue
            return opts["-j"]
        return "ACCEPT"


def _parse_spec(spec: tuple[str, ...]) -> dict[str, str]:
    return {spec[i]: spec[i + 1] for i in range(0, len(spec) - 1, 2)}


def _iface_matches(pattern: str | None, dev: str) -> bool:
    if pattern is None:
        return True
    if pattern.endswith("+"):
        return dev.startswith(pattern[:-1])
    return dev == pattern


class FakeLinks:
    def __init__(self):
        self.devices: dict[str, dict] = {}
        self.create_error: Exception | None = None

    def exists(self, name: str) -> bool:
        return name in self.devices

    def create_tap(self, name: str) -> None:
        if self.create_error:
            raise self.create_error
        self.devices[name] = {"address": None, "up": False}

    def configure(self, name: str, address: str, prefix_len: int) -> None:
        if name not in self.devices:
            raise RuntimeError(f"TAP {name} not found")
        self.devices[name].update(address=f"{address}/{prefix_len}", up=True)

    def delete(self, name: str) -> bool:
        return self.devices.pop(name, None) is not None

    def default_route_interface(self) -> str | None:
        return "eth0"


# ============================================================================
# Storage and Guests
# ============================================================================


class FakeStorage(TenantStorage):
    """
    Tenant storage that writes small placeholder disks instead of ext4.

    Environment files are captured per data volume instead of being written
    through a loop mount.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.env_files: dict[str, str] = {}

    async def _copy_rootfs(self, target: str) -> None:
        with open(target, "wb") as f:
            f.write(b"rootfs")

    async def _create_data_volume(self, target: str, disk_mib: int) -> None:
        with open(target, "wb") as f:
            f.truncate(disk_mib)

    async def write_env(self, paths, env_vars: dict[str, str]) -> None:
        self.env_files[paths.data_volume] = render_env(env_vars)


class FakeGuests:
    """
    Guest-side HTTP, keyed by guest IP.

    Modes: "ok" (default), "refuse", "timeout", "unhealthy".
    """

    @staticmethod
    def _reply(status: int, payload: dict, headers: dict | None = None) -> httpx.Response:
        # Unread stream, as a real upstream hands to a streaming client
        body = json.dumps(payload).encode()
        return httpx.Response(
            status,
            headers={"content-type": "application/json", **(headers or {})},
            stream=httpx.ByteStream(body),
        )

    def __init__(self):
        self.modes: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        ip = request.url.host
        mode = self.modes.get(ip, "ok")
        if mode == "refuse":
            raise httpx.ConnectError("Connection refused", request=request)
        if mode == "timeout":
            raise httpx.ConnectTimeout("timed out", request=request)

        if request.url.path == "/health":
            if mode == "unhealthy":
                return self._reply(503, {"status": "unhealthy"})
            return self._reply(
                200,
                {
                    "status": "healthy",
                    "memory_mb": 41,
                    "load": 0.02,
                    "disk_mb": 3,
                    "uptime_s": 120,
                },
            )

        self.requests.append(request)
        return self._reply(
            200,
            {
                "guest": ip,
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query.decode(),
                "headers": {k.lower(): v for k, v in request.headers.items()},
                "body": request.content.decode(),
            },
            headers={"x-guest": ip},
        )


# ============================================================================
# Fixtures
# ============================================================================


def make_config(tmp_path, **overrides) -> HostConfig:
    cfg = HostConfig(
        SUBNET_POOL="172.16.0.0/24",
        NETWORK_BACKEND=NetworkBackend.LINUX,
        DB_FILE=str(tmp_path / "fcsaas.db"),
        DATA_DIR=str(tmp_path / "tenants"),
        SNAPSHOT_DIR=str(tmp_path / "snapshots"),
        SOCKET_DIR=str(tmp_path / "run"),
        ROOTFS_PATH=str(tmp_path / "rootfs.ext4"),
        KERNEL_PATH=str(tmp_path / "vmlinux"),
        BOOT_TIMEOUT_SECONDS=2.0,
        SOCKET_WAIT_SECONDS=0.5,
        STOP_TIMEOUT_SECONDS=0.3,
        KILL_TIMEOUT_SECONDS=0.3,
        HEALTH_CHECK_INTERVAL_SECONDS=0.02,
        HEALTH_CHECK_TIMEOUT_SECONDS=0.5,
        HEALTH_FAILURE_THRESHOLD=2,
    )
    for name, value in overrides.items():
        setattr(cfg, name, value)
    return cfg


class Harness:
    """A control plane wired to fakes, plus handles on every fake."""

    def __init__(self, tmp_path, **overrides):
        self.tmp_path = tmp_path
        self.config = make_config(tmp_path, **overrides)
        self.launcher = FakeLauncher()
        self.hypervisor = FakeHypervisor(self.launcher)
        self.iptables = FakeIptables()
        self.links = FakeLinks()
        self.guests = FakeGuests()
        self.services = None

    def build(self):
        network = LinuxNetworkIsolation(
            uplink="eth0",
            iptables=self.iptables,
            links=self.links,
            ip_forward_path=str(self.tmp_path / "ip_forward"),
        )
        self.services = build_services(
            self.config,
            launcher=self.launcher,
            client_factory=self.hypervisor.client_factory,
            network=network,
            storage=FakeStorage(self.config.DATA_DIR, self.config.ROOTFS_PATH),
            health_transport=self.guests.transport,
            proxy_transport=self.guests.transport,
        )
        return self.services

    async def start(self):
        await start_services(self.build())
        return self.services

    async def restart(self):
        """Simulate a control plane restart; guests keep running."""
        await stop_services(self.services)
        return await self.start()

    async def stop(self):
        if self.services is not None:
            await stop_services(self.services)
            self.services = None

    @property
    def registry(self):
        return self.services.registry

    @property
    def monitor(self):
        return self.services.monitor


@pytest.fixture
async def make_harness(tmp_path):
    """Factory for harnesses with config overrides; all are stopped at teardown."""
    created: list[Harness] = []

    def factory(**overrides) -> Harness:
        h = Harness(tmp_path, **overrides)
        created.append(h)
        return h

    yield factory
    for h in created:
        await h.stop()


@pytest.fixture
async def harness(make_harness):
    h = make_harness()
    await h.start()
    return h


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until true or timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
