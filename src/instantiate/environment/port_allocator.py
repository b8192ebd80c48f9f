"""
Host port allocation for preview stacks.

Every port slot a stack declares is leased from the [port_min, port_max]
range. A port is handed out only when all of these hold:

    - no other slot holds it in the ledger
    - no running container publishes it
    - binding it on the host succeeds

A redeployed stack keeps the leased ports its own containers publish.

Nothing locks the range across processes, so races with foreign processes
remain possible.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, Optional, Set

from ..config import InstantiateConfig
from ..container_runtime import ContainerRuntime, is_host_port_free
from ..models import PortLease
from ..store import Store

logger = logging.getLogger(__name__)


class NoAvailablePortError(Exception):
    """Every port of the allocation range is taken."""

    def __init__(self, message: str = "There is no available port"):
        super().__init__(message)


class PortAllocator:
    """Leases external ports per (project, merge request, service, slot)."""

    DEFAULT_PORT_MIN = 10000
    DEFAULT_PORT_MAX = 11000

    def __init__(
        self,
        store: Store,
        runtime: ContainerRuntime,
        port_min: int = DEFAULT_PORT_MIN,
        port_max: int = DEFAULT_PORT_MAX,
        excluded_ports: Optional[Iterable[int]] = None,
        host_probe: Callable[[int], bool] = is_host_port_free,
    ):
        if port_max < port_min:
            raise ValueError(f"Invalid port range {port_min}-{port_max}")
        self.store = store
        self.runtime = runtime
        self.port_min = port_min
        self.port_max = port_max
        self.excluded_ports: Set[int] = set(excluded_ports or ())
        self.host_probe = host_probe
        # Held across the scan so concurrent deploys never pick the same port
        self._allocation_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: InstantiateConfig, store: Store, runtime: ContainerRuntime) -> "PortAllocator":
        return cls(
            store,
            runtime,
            port_min=config.port_min,
            port_max=config.port_max,
            excluded_ports=config.excluded_ports,
        )

    async def _is_port_free(self, port: int, used_ports: Set[int], exposed_ports: Set[int]) -> bool:
        if port in used_ports:
            return False
        if port in exposed_ports:
            return False
        return await asyncio.to_thread(self.host_probe, port)

    async def _find_free_port(self, used_ports: Set[int], exposed_ports: Set[int]) -> int:
        for port in range(self.port_min, self.port_max + 1):
            if port in self.excluded_ports or port in used_ports:
                continue
            if await self._is_port_free(port, used_ports, exposed_ports):
                return port
            logger.debug(f"Port {port} is in use outside the ledger, skipping")
        raise NoAvailablePortError()

    def _in_range(self, port: int) -> bool:
        return self.port_min <= port <= self.port_max and port not in self.excluded_ports

    async def _lease_still_valid(
        self, port: int, used_ports: Set[int], exposed_ports: Set[int], stack_name: Optional[str]
    ) -> bool:
        if not self._in_range(port) or port in used_ports:
            return False
        if stack_name and port in await self.runtime.get_project_ports(stack_name):
            # Published by the stack being redeployed
            return True
        return await self._is_port_free(port, used_ports, exposed_ports)

    async def allocate(
        self,
        project_id: str,
        mr_id: str,
        service: str,
        slot_name: str,
        internal_port: Optional[int] = None,
        stack_name: Optional[str] = None,
    ) -> int:
        """
        Return the external port leased to a slot, leasing one if needed.

        An existing lease keeps its port while that port is inside the range,
        not excluded, and either free or published by the stack itself
        (stack_name). When something else grabbed it, the lease is re-pointed
        in place to the lowest free port of the range.

        Raises:
            NoAvailablePortError: If the range is exhausted
        """
        async with self._allocation_lock:
            return await self._allocate(project_id, mr_id, service, slot_name, internal_port, stack_name)

    async def _allocate(
        self,
        project_id: str,
        mr_id: str,
        service: str,
        slot_name: str,
        internal_port: Optional[int],
        stack_name: Optional[str],
    ) -> int:
        exposed_ports = await self.runtime.get_exposed_ports()
        lease = self.store.get_lease(project_id, mr_id, service, slot_name)

        if lease is not None:
            used_ports = self.store.get_used_ports(exclude=lease)
            previous = lease.external_port
            if await self._lease_still_valid(previous, used_ports, exposed_ports, stack_name):
                logger.info(f"Port already allocated: {previous} for {service} {slot_name} (MR:{mr_id})")
                return previous

            port = await self._find_free_port(used_ports | {previous}, exposed_ports)
            self.store.update_lease_port(lease, port)
            logger.warning(
                f"Port {previous} for {service} {slot_name} (MR:{mr_id}) is no longer usable, moved lease to {port}"
            )
            return port

        used_ports = self.store.get_used_ports()
        port = await self._find_free_port(used_ports, exposed_ports)
        self.store.add_lease(
            PortLease(
                project_id=project_id,
                mr_id=mr_id,
                service=service,
                slot_name=slot_name,
                internal_port=internal_port,
                external_port=port,
            )
        )
        logger.info(f"Port allocated: {port} for {service} {slot_name} (MR:{mr_id})")
        return port

    def release(self, project_id: str, mr_id: str) -> None:
        """Drop every lease of a merge request. Safe to call repeatedly."""
        released = self.store.release_leases(project_id, mr_id)
        logger.info(f"Released {released} port(s) for MR #{mr_id}")

    def ports_for(self, project_id: str, mr_id: str) -> Dict[str, int]:
        return self.store.get_ports_for(project_id, mr_id)
