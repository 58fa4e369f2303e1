"""
Per-tenant network isolation.

Every tenant guest gets a point-to-point TAP device ``fc-<id>`` carrying
the gateway address of its /30 block, plus three iptables rules:

    nat    POSTROUTING -s <block> -o <uplink> -j MASQUERADE
    filter FORWARD -i <dev> -o <uplink> -j ACCEPT
    filter FORWARD -i <uplink> -o <dev> -m state --state RELATED,ESTABLISHED -j ACCEPT

A single host-wide rule at the head of FORWARD drops anything routed from
one tenant device to another:

    filter FORWARD -i fc-+ -o fc-+ -j DROP

That isolation rule is installed once, checked with ``iptables -C`` before
every insert, and never removed by tenant teardown.

The orchestration code depends only on ``NetworkIsolationManager``; the
Linux adapter talks to netlink through pyroute2 and to iptables through a
subprocess runner, both injectable so tests can substitute fakes.
"""

from __future__ import annotations

import asyncio
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass

from fcsaas.exceptions import NetworkSetupFailed
from fcsaas.firecracker.naming import DEVICE_PREFIX, device_name
from fcsaas.models.subnet_pool import SubnetLease
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)

IP_FORWARD_PATH = "/proc/sys/net/ipv4/ip_forward"


# =============================================================================
# Firewall Rules
# =============================================================================


@dataclass(frozen=True)
class FirewallRule:
    """One iptables rule: table, chain and match/target spec."""

    table: str
    chain: str
    spec: tuple[str, ...]

    def __str__(self) -> str:
        return f"-t {self.table} {self.chain} {' '.join(self.spec)}"


ISOLATION_RULE = FirewallRule(
    "filter",
    "FORWARD",
    ("-i", f"{DEVICE_PREFIX}+", "-o", f"{DEVICE_PREFIX}+", "-j", "DROP"),
)


def tenant_rules(device: str, lease: SubnetLease, uplink: str) -> list[FirewallRule]:
    """Per-tenant rules in installation order."""
    return [
        FirewallRule(
            "nat",
            "POSTROUTING",
            ("-s", lease.network, "-o", uplink, "-j", "MASQUERADE"),
        ),
        FirewallRule(
            "filter",
            "FORWARD",
            ("-i", device, "-o", uplink, "-j", "ACCEPT"),
        ),
        FirewallRule(
            "filter",
            "FORWARD",
            (
                "-i",
                uplink,
                "-o",
                device,
                "-m",
                "state",
                "--state",
                "RELATED,ESTABLISHED",
                "-j",
                "ACCEPT",
            ),
        ),
    ]


class IptablesRunner:
    """Runs iptables commands; failures raise ``subprocess.CalledProcessError``."""

    def __init__(self, binary: str = "iptables"):
        self.binary = binary

    def _run(self, rule: FirewallRule, op: str, position: int | None = None):
        cmd = [self.binary, "-w", "-t", rule.table, op, rule.chain]
        if position is not None:
            cmd.append(str(position))
        cmd.extend(rule.spec)
        return subprocess.run(cmd, check=True, capture_output=True, text=True)

    def exists(self, rule: FirewallRule) -> bool:
        try:
            self._run(rule, "-C")
            return True
        except subprocess.CalledProcessError:
            return False

    def insert(self, rule: FirewallRule, position: int = 1) -> None:
        self._run(rule, "-I", position)

    def append(self, rule: FirewallRule) -> None:
        self._run(rule, "-A")

    def delete(self, rule: FirewallRule) -> None:
        self._run(rule, "-D")


# =============================================================================
# Links
# =============================================================================


class LinkBackend:
    """TAP device operations over netlink (pyroute2)."""

    def _index(self, ipr, name: str) -> int | None:
        indexes = ipr.link_lookup(ifname=name)
        return indexes[0] if indexes else None

    def exists(self, name: str) -> bool:
        from pyroute2 import IPRoute

        ipr = IPRoute()
        try:
            return self._index(ipr, name) is not None
        finally:
            ipr.close()

    def create_tap(self, name: str) -> None:
        from pyroute2 import IPRoute

        ipr = IPRoute()
        try:
            ipr.link("add", ifname=name, kind="tuntap", mode="tap")
            logger.debug(f"Created TAP device {name}")
        finally:
            ipr.close()

    def configure(self, name: str, address: str, prefix_len: int) -> None:
        """Assign the gateway address and bring the device up."""
        from pyroute2 import IPRoute

        ipr = IPRoute()
        try:
            idx = self._index(ipr, name)
            if idx is None:
                raise RuntimeError(f"TAP {name} not found")
            ipr.addr("replace", index=idx, address=address, prefixlen=prefix_len)
            ipr.link("set", index=idx, state="up")
        finally:
            ipr.close()

    def delete(self, name: str) -> bool:
        """Delete a device; returns False when it did not exist."""
        from pyroute2 import IPRoute

        ipr = IPRoute()
        try:
            idx = self._index(ipr, name)
            if idx is None:
                return False
            ipr.link("del", index=idx)
            logger.debug(f"Deleted TAP device {name}")
            return True
        finally:
            ipr.close()

    def default_route_interface(self) -> str | None:
        """Name of the interface carrying the IPv4 default route."""
        import socket

        from pyroute2 import IPRoute

        ipr = IPRoute()
        try:
            for route in ipr.get_default_routes(family=socket.AF_INET):
                oif = route.get_attr("RTA_OIF")
                if oif is None:
                    continue
                links = ipr.get_links(oif)
                if links:
                    return links[0].get_attr("IFLA_IFNAME")
            return None
        finally:
            ipr.close()


# =============================================================================
# Managers
# =============================================================================


class NetworkIsolationManager(ABC):
    """Narrow interface the registry drives for tenant networking."""

    async def initialize(self) -> None:
        """Prepare host-wide state (forwarding, isolation rule)."""

    @abstractmethod
    async def setup(self, tenant_id: str, lease: SubnetLease) -> str:
        """Create the tenant's device and rules; returns the device name."""

    @abstractmethod
    async def teardown(self, tenant_id: str, device: str, lease: SubnetLease) -> None:
        """Remove the tenant's device and rules; missing items are ignored."""

    @abstractmethod
    async def device_exists(self, device: str) -> bool: ...


class NoopNetworkIsolation(NetworkIsolationManager):
    """Tracks device names only; for development hosts without root."""

    def __init__(self):
        self.devices: set[str] = set()

    async def setup(self, tenant_id: str, lease: SubnetLease) -> str:
        dev = device_name(tenant_id)
        self.devices.add(dev)
        logger.debug(f"[noop] network for {tenant_id}: {dev} {lease.network}")
        return dev

    async def teardown(self, tenant_id: str, device: str, lease: SubnetLease) -> None:
        self.devices.discard(device)

    async def device_exists(self, device: str) -> bool:
        return device in self.devices


class LinuxNetworkIsolation(NetworkIsolationManager):
    """
    TAP devices and iptables rules on the local Linux host.

    Args:
        uplink: Egress interface (auto-detected from the default route when
            empty).
        iptables: Rule runner (defaults to the iptables binary).
        links: Device backend (defaults to pyroute2).
        ip_forward_path: sysctl file enabling IPv4 forwarding.
    """

    def __init__(
        self,
        uplink: str = "",
        iptables: IptablesRunner | None = None,
        links: LinkBackend | None = None,
        ip_forward_path: str = IP_FORWARD_PATH,
    ):
        self.iptables = iptables or IptablesRunner()
        self.links = links or LinkBackend()
        self.ip_forward_path = ip_forward_path
        self._uplink = uplink

    # --- Host-wide ---

    @property
    def uplink(self) -> str:
        if not self._uplink:
            detected = self.links.default_route_interface()
            if not detected:
                raise RuntimeError("Cannot detect uplink interface (no default route)")
            logger.info(f"Using uplink interface {detected}")
            self._uplink = detected
        return self._uplink

    async def initialize(self) -> None:
        await asyncio.to_thread(self._initialize_sync)

    def _initialize_sync(self) -> None:
        try:
            with open(self.ip_forward_path, "w") as f:
                f.write("1")
        except OSError as e:
            logger.warning(f"Failed to enable IP forwarding: {e}")
        self._ensure_isolation_rule()
        logger.info(f"Network isolation ready (uplink={self.uplink})")

    def _ensure_isolation_rule(self) -> None:
        if self.iptables.exists(ISOLATION_RULE):
            return
        self.iptables.insert(ISOLATION_RULE, 1)
        logger.info(f"Installed tenant isolation rule: {ISOLATION_RULE}")

    # --- Per-tenant ---

    async def setup(self, tenant_id: str, lease: SubnetLease) -> str:
        return await asyncio.to_thread(self._setup_sync, tenant_id, lease)

    def _setup_sync(self, tenant_id: str, lease: SubnetLease) -> str:
        dev = device_name(tenant_id)
        undo = []
        try:
            uplink = self.uplink
            self._ensure_isolation_rule()

            if not self.links.exists(dev):
                self.links.create_tap(dev)
                undo.append(lambda: self.links.delete(dev))
            self.links.configure(dev, lease.gateway_addr, lease.prefix_len)

            for rule in tenant_rules(dev, lease, uplink):
                if self.iptables.exists(rule):
                    continue
                if rule.chain == "FORWARD":
                    # Keep the isolation rule in front of tenant accepts
                    self.iptables.insert(rule, 2)
                else:
                    self.iptables.append(rule)
                undo.append(lambda r=rule: self.iptables.delete(r))

        except Exception as e:
            detail = getattr(e, "stderr", None) or str(e)
            logger.error(f"Network setup for {tenant_id} failed: {detail}")
            for step in reversed(undo):
                try:
                    step()
                except Exception as cleanup_error:
                    logger.warning(f"Rollback step failed for {tenant_id}: {cleanup_error}")
            raise NetworkSetupFailed(str(detail).strip(), tenant_id) from e

        logger.info(f"Network ready for {tenant_id}: {dev} {lease.gateway_addr}/{lease.prefix_len}")
        return dev

    async def teardown(self, tenant_id: str, device: str, lease: SubnetLease) -> None:
        await asyncio.to_thread(self._teardown_sync, tenant_id, device, lease)

    def _teardown_sync(self, tenant_id: str, device: str, lease: SubnetLease) -> None:
        try:
            for rule in reversed(tenant_rules(device, lease, self.uplink)):
                while self.iptables.exists(rule):
                    self.iptables.delete(rule)
            self.links.delete(device)
        except Exception as e:
            detail = getattr(e, "stderr", None) or str(e)
            raise NetworkSetupFailed(
                f"teardown of {device}: {str(detail).strip()}", tenant_id
            ) from e
        logger.info(f"Network removed for {tenant_id}: {device}")

    async def device_exists(self, device: str) -> bool:
        return await asyncio.to_thread(self.links.exists, device)
