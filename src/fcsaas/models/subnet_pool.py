"""
Subnet pool configuration for tenant networks.

The pool is a CIDR (default 172.16.0.0/16) carved into successive /30
blocks. Each block holds exactly two usable addresses:

    block N: network = base + 4*N
             gateway = base + 4*N + 1   (host side, on the tenant TAP device)
             guest   = base + 4*N + 2   (inside the microVM)
             broadcast = base + 4*N + 3

Block 0 is reserved so that the pool's own network address is never handed
out. Examples with the default pool:
- block 1: 172.16.0.4/30, gateway 172.16.0.5, guest 172.16.0.6
- block 2: 172.16.0.8/30, gateway 172.16.0.9, guest 172.16.0.10
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass


BLOCK_PREFIX = 30
BLOCK_SIZE = 4


@dataclass(frozen=True)
class SubnetLease:
    """A tenant's ownership of one /30 block."""

    index: int
    network: str  # "172.16.0.4/30"
    gateway_addr: str  # "172.16.0.5"
    guest_addr: str  # "172.16.0.6"
    netmask: str  # "255.255.255.252"
    prefix_len: int = BLOCK_PREFIX

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "network": self.network,
            "gateway_addr": self.gateway_addr,
            "guest_addr": self.guest_addr,
            "netmask": self.netmask,
            "prefix_len": self.prefix_len,
        }


@dataclass
class SubnetPoolConfig:
    """
    Pool configuration parsed from a CIDR string.

    Attributes:
        pool_network: The whole pool (e.g., 172.16.0.0/16).
        first_index: Lowest block index handed out (block 0 is reserved).
    """

    pool_network: ipaddress.IPv4Network
    first_index: int = 1

    DEFAULT_CIDR = "172.16.0.0/16"

    @classmethod
    def parse(cls, cidr: str) -> SubnetPoolConfig:
        """
        Parse a pool CIDR.

        Raises:
            ValueError: If the CIDR is invalid or too small to hold a block.
        """
        try:
            network = ipaddress.IPv4Network(cidr.strip(), strict=False)
        except (ipaddress.AddressValueError, ipaddress.NetmaskValueError) as e:
            raise ValueError(f"Invalid subnet pool '{cidr}': {e}")

        if network.prefixlen > 29:
            raise ValueError(
                f"Invalid subnet pool '{cidr}': prefix /{network.prefixlen} "
                f"leaves no room for /30 tenant blocks (need /29 or larger)"
            )
        return cls(pool_network=network)

    @classmethod
    def default(cls) -> SubnetPoolConfig:
        return cls.parse(cls.DEFAULT_CIDR)

    @property
    def block_count(self) -> int:
        """Total number of /30 blocks in the pool, including reserved block 0."""
        return self.pool_network.num_addresses // BLOCK_SIZE

    @property
    def capacity(self) -> int:
        """Number of blocks available to tenants."""
        return self.block_count - self.first_index

    def lease_for_index(self, index: int) -> SubnetLease:
        """
        Compute the addresses of block ``index``.

        Raises:
            ValueError: If the index is outside the pool.
        """
        if index < self.first_index or index >= self.block_count:
            raise ValueError(
                f"Block index {index} outside pool {self.pool_network} "
                f"(valid: {self.first_index}..{self.block_count - 1})"
            )
        base = int(self.pool_network.network_address) + index * BLOCK_SIZE
        block = ipaddress.IPv4Network((base, BLOCK_PREFIX))
        return SubnetLease(
            index=index,
            network=str(block),
            gateway_addr=str(ipaddress.IPv4Address(base + 1)),
            guest_addr=str(ipaddress.IPv4Address(base + 2)),
            netmask=str(block.netmask),
        )

    def index_for_address(self, addr: str) -> int | None:
        """Find the block index containing ``addr`` (None if outside the pool)."""
        try:
            ip = ipaddress.IPv4Address(addr)
        except ipaddress.AddressValueError:
            return None
        if ip not in self.pool_network:
            return None
        offset = int(ip) - int(self.pool_network.network_address)
        return offset // BLOCK_SIZE

    def __str__(self) -> str:
        return f"{self.pool_network} ({self.capacity} x /{BLOCK_PREFIX})"
