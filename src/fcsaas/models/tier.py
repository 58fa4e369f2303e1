"""Tier resource profiles."""

from dataclasses import dataclass

from fcsaas.models.enums import Tier


@dataclass(frozen=True)
class TierSpec:
    """Fixed resources granted to a tenant of a given tier."""

    vcpu_count: int
    memory_mib: int
    disk_mib: int
    bandwidth_mbps: int

    def rate_limiter(self) -> dict:
        """Firecracker token-bucket limiter enforcing the bandwidth cap."""
        bytes_per_second = self.bandwidth_mbps * 1_000_000 // 8
        return {
            "bandwidth": {
                "size": bytes_per_second,
                "refill_time": 1000,  # ms
            }
        }

    def to_dict(self) -> dict:
        return {
            "vcpu_count": self.vcpu_count,
            "memory_mib": self.memory_mib,
            "disk_mib": self.disk_mib,
            "bandwidth_mbps": self.bandwidth_mbps,
        }


TIER_SPECS: dict[Tier, TierSpec] = {
    Tier.FREE: TierSpec(vcpu_count=1, memory_mib=128, disk_mib=128, bandwidth_mbps=10),
    Tier.PRO: TierSpec(vcpu_count=1, memory_mib=256, disk_mib=512, bandwidth_mbps=50),
    Tier.TEAM: TierSpec(
        vcpu_count=2, memory_mib=512, disk_mib=2048, bandwidth_mbps=200
    ),
    Tier.ENTERPRISE: TierSpec(
        vcpu_count=4, memory_mib=1024, disk_mib=8192, bandwidth_mbps=1000
    ),
}


def tier_spec(tier: Tier | str) -> TierSpec:
    """Look up the resource profile for a tier."""
    return TIER_SPECS[Tier(tier)]
