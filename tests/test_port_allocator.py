"""
Tests for host port allocation.
"""

import asyncio
import socket

import pytest

from instantiate.environment.port_allocator import NoAvailablePortError, PortAllocator
from instantiate.models import PortLease


def allocator_with(store, runtime, port_min=20000, port_max=20010, busy=(), excluded=None):
    """Allocator whose host probe reports the ports in busy as bound."""
    busy = set(busy)
    return PortAllocator(
        store,
        runtime,
        port_min=port_min,
        port_max=port_max,
        excluded_ports=excluded,
        host_probe=lambda port: port not in busy,
    )


class TestAllocate:
    """Test PortAllocator.allocate."""

    def test_lowest_free_port_wins(self, store, runtime):
        allocator = allocator_with(store, runtime)

        port = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT"))

        assert port == 20000
        assert store.get_lease("1", "10", "web", "WEB_PORT").external_port == 20000

    def test_distinct_keys_get_distinct_ports(self, store, runtime):
        allocator = allocator_with(store, runtime)
        keys = [
            ("1", "10", "web", "WEB_PORT_1"),
            ("1", "10", "web", "WEB_PORT_2"),
            ("1", "10", "api", "API_PORT"),
            ("1", "11", "web", "WEB_PORT_1"),
            ("2", "10", "web", "WEB_PORT_1"),
        ]

        async def allocate_all():
            return [await allocator.allocate(*key) for key in keys]

        ports = asyncio.run(allocate_all())

        assert len(set(ports)) == len(keys)
        assert all(20000 <= port <= 20010 for port in ports)

    def test_concurrent_allocations_get_distinct_ports(self, store, runtime):
        allocator = allocator_with(store, runtime)

        async def allocate_together():
            return await asyncio.gather(
                allocator.allocate("1", "10", "web", "WEB_PORT"),
                allocator.allocate("1", "11", "web", "WEB_PORT"),
                allocator.allocate("2", "10", "api", "API_PORT"),
            )

        ports = asyncio.run(allocate_together())

        assert sorted(ports) == [20000, 20001, 20002]

    def test_same_key_returns_same_port(self, store, runtime):
        allocator = allocator_with(store, runtime)

        first = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT"))
        second = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT"))

        assert first == second
        assert store.get_used_ports() == {first}

    def test_skips_excluded_and_leased_ports(self, store, runtime):
        store.add_lease(PortLease("9", "99", "db", "DB_PORT", external_port=20001))
        allocator = allocator_with(store, runtime, excluded=[20000, 20002])

        port = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT"))

        assert port == 20003

    def test_skips_ports_published_by_containers(self, store, runtime):
        runtime.get_exposed_ports.return_value = {20000, 20001}
        allocator = allocator_with(store, runtime)

        assert asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT")) == 20002

    def test_skips_ports_bound_on_host(self, store, runtime):
        allocator = allocator_with(store, runtime, busy={20000})

        assert asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT")) == 20001

    def test_occupied_lease_is_moved_in_place(self, store, runtime):
        allocator = allocator_with(store, runtime)
        original = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT"))

        # Someone else now holds the leased port
        runtime.get_exposed_ports.return_value = {original}
        moved = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT"))

        assert moved != original
        assert store.get_lease("1", "10", "web", "WEB_PORT").external_port == moved
        assert allocator.ports_for("1", "10") == {"WEB_PORT": moved}
        assert store.get_used_ports() == {moved}

    def test_lease_moved_when_host_probe_fails(self, store, runtime):
        store.add_lease(PortLease("1", "10", "web", "WEB_PORT", external_port=20000))
        allocator = allocator_with(store, runtime, busy={20000})

        assert asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT")) == 20001

    def test_lease_published_by_own_stack_is_kept(self, store, runtime):
        allocator = allocator_with(store, runtime)
        first = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT", stack_name="acme-shop-fix"))

        # The running stack now publishes the leased port
        runtime.get_exposed_ports.return_value = {first}
        runtime.get_project_ports.return_value = {first}
        allocator.host_probe = lambda port: port != first
        second = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT", stack_name="acme-shop-fix"))

        assert second == first
        runtime.get_project_ports.assert_awaited_with("acme-shop-fix")
        assert store.get_used_ports() == {first}

    def test_lease_published_by_another_stack_is_moved(self, store, runtime):
        allocator = allocator_with(store, runtime)
        first = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT", stack_name="acme-shop-fix"))

        runtime.get_exposed_ports.return_value = {first}
        runtime.get_project_ports.return_value = set()
        second = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT", stack_name="acme-shop-fix"))

        assert second != first

    def test_own_ports_do_not_count_for_new_leases(self, store, runtime):
        runtime.get_exposed_ports.return_value = {20000}
        runtime.get_project_ports.return_value = {20000}
        allocator = allocator_with(store, runtime)

        assert asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT", stack_name="acme-shop-fix")) == 20001

    def test_lease_on_newly_excluded_port_is_moved(self, store, runtime):
        store.add_lease(PortLease("1", "10", "web", "WEB_PORT", external_port=20000))
        runtime.get_project_ports.return_value = {20000}
        allocator = allocator_with(store, runtime, excluded=[20000])

        assert asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT", stack_name="acme-shop-fix")) == 20001
        assert store.get_lease("1", "10", "web", "WEB_PORT").external_port == 20001

    def test_lease_outside_narrowed_range_is_moved(self, store, runtime):
        store.add_lease(PortLease("1", "10", "web", "WEB_PORT", external_port=19999))
        allocator = allocator_with(store, runtime)

        assert asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT")) == 20000
        assert allocator.ports_for("1", "10") == {"WEB_PORT": 20000}

    def test_exhausted_range_raises(self, store, runtime):
        allocator = allocator_with(store, runtime, port_min=20000, port_max=20001, busy={20000, 20001})

        with pytest.raises(NoAvailablePortError, match="There is no available port"):
            asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT"))

        assert store.get_ports_for("1", "10") == {}

    def test_exhaustion_with_real_bound_socket(self, store, runtime):
        """min == max == X with X bound by another socket."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
            holder.bind(("0.0.0.0", 0))
            holder.listen(1)
            taken = holder.getsockname()[1]

            allocator = PortAllocator(store, runtime, port_min=taken, port_max=taken)

            with pytest.raises(NoAvailablePortError):
                asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT"))

    def test_invalid_range_rejected(self, store, runtime):
        with pytest.raises(ValueError, match="Invalid port range"):
            PortAllocator(store, runtime, port_min=20010, port_max=20000)

    def test_from_config(self, test_config, store, runtime):
        test_config.excluded_ports = [20000]
        allocator = PortAllocator.from_config(test_config, store, runtime)

        assert (allocator.port_min, allocator.port_max) == (20000, 20010)
        assert allocator.excluded_ports == {20000}


class TestRelease:
    """Test PortAllocator.release and ports_for."""

    def test_release_drops_all_leases_of_merge_request(self, store, runtime):
        allocator = allocator_with(store, runtime)

        async def allocate():
            await allocator.allocate("1", "10", "web", "WEB_PORT_1")
            await allocator.allocate("1", "10", "web", "WEB_PORT_2")
            await allocator.allocate("1", "11", "web", "WEB_PORT")

        asyncio.run(allocate())
        allocator.release("1", "10")

        assert allocator.ports_for("1", "10") == {}
        assert list(allocator.ports_for("1", "11")) == ["WEB_PORT"]

    def test_release_without_leases_is_noop(self, store, runtime):
        allocator = allocator_with(store, runtime)

        allocator.release("1", "10")
        allocator.release("1", "10")

        assert allocator.ports_for("1", "10") == {}

    def test_released_port_is_reused(self, store, runtime):
        allocator = allocator_with(store, runtime)
        port = asyncio.run(allocator.allocate("1", "10", "web", "WEB_PORT"))
        allocator.release("1", "10")

        assert asyncio.run(allocator.allocate("1", "11", "web", "WEB_PORT")) == port
