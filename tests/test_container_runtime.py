"""
Tests for container runtime access.
"""

import asyncio
import socket
from unittest.mock import AsyncMock, patch

from instantiate.container_runtime import ContainerRuntime, is_host_port_free, parse_published_ports
from instantiate.process import CommandError, CommandResult


class TestParsePublishedPorts:
    def test_single_and_dual_stack_entries(self):
        output = "0.0.0.0:10001->80/tcp, :::10001->80/tcp\n127.0.0.1:10002->5432/tcp\n"
        assert parse_published_ports(output) == {10001, 10002}

    def test_ranges(self):
        assert parse_published_ports("0.0.0.0:8000-8002->8000-8002/tcp") == {8000, 8001, 8002}
        assert parse_published_ports("0.0.0.0:8002-8000->80/tcp") == {8000, 8001, 8002}

    def test_exposed_only_entries_ignored(self):
        assert parse_published_ports("80/tcp, 443/tcp\n\n") == set()

    def test_garbage_ignored(self):
        assert parse_published_ports("0.0.0.0:abc->80/tcp, 0.0.0.0:9000->90/tcp") == {9000}


class TestIsHostPortFree:
    def test_bound_port_is_not_free(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
            holder.bind(("0.0.0.0", 0))
            holder.listen(1)
            assert is_host_port_free(holder.getsockname()[1]) is False

    def test_unbound_port_is_free(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind(("0.0.0.0", 0))
            port = probe.getsockname()[1]
        assert is_host_port_free(port) is True


class TestContainerRuntime:
    """Test ContainerRuntime."""

    @patch("instantiate.container_runtime.run_command", new_callable=AsyncMock)
    def test_get_exposed_ports(self, mock_run, test_config):
        mock_run.return_value = CommandResult(command=[], exit_code=0, output="0.0.0.0:20003->80/tcp\n")

        ports = asyncio.run(ContainerRuntime(test_config).get_exposed_ports())

        assert ports == {20003}
        assert mock_run.call_args.args[0] == ["docker", "ps", "--format", "{{.Ports}}"]

    @patch("instantiate.container_runtime.run_command", new_callable=AsyncMock)
    def test_get_exposed_ports_runtime_unavailable(self, mock_run, test_config):
        mock_run.side_effect = CommandError(["docker", "ps"], 127, "docker: not found")

        assert asyncio.run(ContainerRuntime(test_config).get_exposed_ports()) == set()

    @patch("instantiate.container_runtime.run_command", new_callable=AsyncMock)
    def test_get_project_ports(self, mock_run, test_config):
        mock_run.side_effect = [
            CommandResult(command=[], exit_code=0, output="0.0.0.0:20000->80/tcp, :::20000->80/tcp\n"),
            CommandResult(command=[], exit_code=0, output="*:20001->443/tcp\n"),
        ]

        ports = asyncio.run(ContainerRuntime(test_config).get_project_ports("acme-shop-fix"))

        assert ports == {20000, 20001}
        compose_query, swarm_query = (c.args[0] for c in mock_run.await_args_list)
        assert "label=com.docker.compose.project=acme-shop-fix" in compose_query
        assert swarm_query[:3] == ["docker", "service", "ls"]
        assert "label=com.docker.stack.namespace=acme-shop-fix" in swarm_query

    @patch("instantiate.container_runtime.run_command", new_callable=AsyncMock)
    def test_get_project_ports_without_swarm(self, mock_run, test_config):
        mock_run.side_effect = [
            CommandResult(command=[], exit_code=0, output="0.0.0.0:20000->80/tcp\n"),
            CommandError(["docker", "service", "ls"], 1, "This node is not a swarm manager."),
        ]

        assert asyncio.run(ContainerRuntime(test_config).get_project_ports("acme-shop-fix")) == {20000}

    @patch("instantiate.container_runtime.run_command", new_callable=AsyncMock)
    def test_run_prebuild(self, mock_run, test_config, temp_workspace):
        test_config.container_runtime = "podman"

        asyncio.run(
            ContainerRuntime(test_config).run_prebuild("node:20", temp_workspace, "/app", ["npm ci", "npm run build"])
        )

        mock_run.assert_awaited_once_with(
            [
                "podman", "run", "--rm",
                "-v", f"{temp_workspace}:/app",
                "-w", "/app",
                "node:20",
                "sh", "-c", "npm ci && npm run build",
            ],
            log_prefix="prebuild",
        )

    @patch("instantiate.container_runtime.run_command", new_callable=AsyncMock)
    def test_run_prebuild_without_commands(self, mock_run, test_config, temp_workspace):
        asyncio.run(ContainerRuntime(test_config).run_prebuild("alpine", temp_workspace, "/app", []))

        mock_run.assert_not_awaited()
