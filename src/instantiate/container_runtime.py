"""
Container runtime access for port discovery and prebuild steps.

Published host ports of running containers are part of the port allocator's
freedom check, and prebuild commands run in throwaway containers.
"""

import logging
import socket
from pathlib import Path
from typing import List, Set, Union

from .config import InstantiateConfig
from .process import CommandError, run_command

logger = logging.getLogger(__name__)


def parse_published_ports(output: str) -> Set[int]:
    """
    Host ports found in `docker ps --format {{.Ports}}` output.

    Entries look like "0.0.0.0:10001->80/tcp, :::10001->80/tcp" and may
    publish ranges such as "0.0.0.0:8000-8002->8000-8002/tcp". Entries without
    "->" are exposed but not published, so they are ignored.
    """
    ports: Set[int] = set()
    for line in output.splitlines():
        for entry in line.split(","):
            entry = entry.strip()
            if "->" not in entry:
                continue
            host_part = entry.split("->", 1)[0]
            port_spec = host_part.rsplit(":", 1)[-1]
            try:
                if "-" in port_spec:
                    start, end = sorted(int(value) for value in port_spec.split("-", 1))
                    ports.update(range(start, end + 1))
                else:
                    ports.add(int(port_spec))
            except ValueError:
                logger.debug(f"Ignoring unparsable port mapping: {entry}")
    return ports


def is_host_port_free(port: int, host: str = "0.0.0.0") -> bool:
    """Try to bind the port exclusively, then release it immediately."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class ContainerRuntime:
    """docker (or podman) CLI access."""

    def __init__(self, config: InstantiateConfig):
        self.config = config
        self.container_runtime = config.container_runtime

    async def get_exposed_ports(self) -> Set[int]:
        """
        Host ports currently published by running containers.

        Returns an empty set when the runtime cannot be queried.
        """
        cmd = [self.container_runtime, "ps", "--format", "{{.Ports}}"]
        try:
            result = await run_command(cmd, stream=False)
        except CommandError as e:
            logger.debug(f"Could not list published ports: {e}")
            return set()
        return parse_published_ports(result.output)

    async def get_project_ports(self, stack_name: str) -> Set[int]:
        """
        Host ports published by the containers and services of one stack.

        Compose containers carry the project label; swarm services publish
        through the routing mesh and show up in `docker service ls` instead.
        Queries that fail (no swarm, runtime missing) contribute nothing.
        """
        queries = [
            [
                self.container_runtime,
                "ps",
                "--filter",
                f"label=com.docker.compose.project={stack_name}",
                "--format",
                "{{.Ports}}",
            ],
            [
                self.container_runtime,
                "service",
                "ls",
                "--filter",
                f"label=com.docker.stack.namespace={stack_name}",
                "--format",
                "{{.Ports}}",
            ],
        ]
        ports: Set[int] = set()
        for cmd in queries:
            try:
                result = await run_command(cmd, stream=False)
            except CommandError as e:
                logger.debug(f"Could not list ports of {stack_name}: {e}")
                continue
            ports |= parse_published_ports(result.output)
        return ports

    async def run_prebuild(
        self,
        image: str,
        host_path: Union[str, Path],
        mount_path: str,
        commands: List[str],
    ) -> None:
        """Run commands in a disposable container with host_path mounted at mount_path."""
        if not commands:
            logger.info(f"Prebuild for {host_path} has no commands, skipping")
            return

        script = " && ".join(commands)
        cmd = [
            self.container_runtime,
            "run",
            "--rm",
            "-v",
            f"{host_path}:{mount_path}",
            "-w",
            mount_path,
            image,
            "sh",
            "-c",
            script,
        ]
        logger.info(f"Prebuild in {image}: {script}")
        await run_command(cmd, log_prefix="prebuild")
