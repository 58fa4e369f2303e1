"""
Subnet allocation for tenant guests.

Each tenant owns exactly one /30 block of the subnet pool while it exists.
Allocation is first-fit on the lowest free block index, so releasing a
block and allocating again returns the same block.

The pool is mutated under a ``threading.Lock``: allocation is a short
in-memory operation, safe to call from coroutines and worker threads
alike, and the lock is never held across I/O.
"""

import heapq
import threading

from fcsaas.exceptions import PoolExhausted
from fcsaas.models.subnet_pool import SubnetLease, SubnetPoolConfig
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)


class SubnetAllocator:
    """
    Hands out non-overlapping /30 blocks from a fixed pool.

    Free blocks below the high-water mark are kept in a min-heap; blocks at
    or above it have never been handed out.
    """

    def __init__(self, pool: SubnetPoolConfig):
        self.pool = pool
        self._lock = threading.Lock()
        self._owned: dict[str, int] = {}  # tenant_id -> block index
        self._owners: dict[int, str] = {}  # block index -> tenant_id
        self._free: list[int] = []  # released indexes below _next_index
        self._next_index = pool.first_index

        logger.info(f"Subnet allocator initialized: {pool}")

    # =========================================================================
    # Allocation
    # =========================================================================

    def allocate(self, tenant_id: str) -> SubnetLease:
        """
        Allocate a block for a tenant.

        Allocating again for a tenant that already owns a block returns the
        existing lease.

        Raises:
            PoolExhausted: If every block is owned.
        """
        with self._lock:
            index = self._owned.get(tenant_id)
            if index is None:
                if self._free:
                    index = heapq.heappop(self._free)
                elif self._next_index < self.pool.block_count:
                    index = self._next_index
                    self._next_index += 1
                else:
                    raise PoolExhausted(len(self._owned))
                self._owned[tenant_id] = index
                self._owners[index] = tenant_id

        lease = self.pool.lease_for_index(index)
        logger.debug(f"Allocated {lease.network} to {tenant_id}")
        return lease

    def release(self, tenant_id: str) -> None:
        """Release a tenant's block; no-op when the tenant owns none."""
        with self._lock:
            index = self._owned.pop(tenant_id, None)
            if index is None:
                return
            self._owners.pop(index, None)
            heapq.heappush(self._free, index)
        logger.debug(f"Released block {index} from {tenant_id}")

    def restore(self, tenant_id: str, index: int) -> SubnetLease:
        """
        Re-own a specific block during startup recovery.

        Raises:
            ValueError: If the index is outside the pool or owned by another
                tenant.
        """
        lease = self.pool.lease_for_index(index)
        with self._lock:
            owner = self._owners.get(index)
            if owner is not None and owner != tenant_id:
                raise ValueError(f"Block {index} already owned by {owner}")

            previous = self._owned.get(tenant_id)
            if previous is not None and previous != index:
                self._owners.pop(previous, None)
                heapq.heappush(self._free, previous)

            if index >= self._next_index:
                for skipped in range(self._next_index, index):
                    heapq.heappush(self._free, skipped)
                self._next_index = index + 1
            elif index in self._free:
                self._free.remove(index)
                heapq.heapify(self._free)

            self._owned[tenant_id] = index
            self._owners[index] = tenant_id
        return lease

    # =========================================================================
    # Queries
    # =========================================================================

    def stats(self) -> dict:
        with self._lock:
            used = len(self._owned)
        return {
            "pool": str(self.pool.pool_network),
            "capacity": self.pool.capacity,
            "used": used,
            "free": self.pool.capacity - used,
        }
