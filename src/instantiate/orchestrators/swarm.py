"""docker swarm backend: one swarm stack per merge request."""

import logging
from pathlib import Path
from typing import Union

from ..models import StackStatus
from ..process import CommandError, run_command
from .base import OrchestratorAdapter

logger = logging.getLogger(__name__)


class DockerSwarmAdapter(OrchestratorAdapter):
    name = "swarm"
    manifest_name = "docker-compose.rendered.yml"

    async def up(self, work_dir: Union[str, Path], stack_name: str) -> None:
        cmd = ["docker", "stack", "deploy", "-c", self.manifest_name, stack_name]
        logger.info(f"Deploying swarm stack {stack_name}")
        await run_command(cmd, cwd=work_dir, log_prefix="swarm")

    async def down(self, work_dir: Union[str, Path], stack_name: str) -> None:
        logger.info(f"Removing swarm stack {stack_name}")
        await run_command(["docker", "stack", "rm", stack_name], log_prefix="swarm")
        await run_command(["docker", "image", "prune", "-f"], log_prefix="swarm")

    async def check_health(self, stack_name: str) -> StackStatus:
        cmd = [
            "docker",
            "service",
            "ls",
            "--filter",
            f"label=com.docker.stack.namespace={stack_name}",
            "--format",
            "{{.Replicas}}",
        ]
        try:
            result = await run_command(cmd, stream=False)
        except CommandError as e:
            logger.error(f"Health check failed for swarm stack {stack_name}: {e}")
            return StackStatus.ERROR

        replicas = [line.strip() for line in result.output.splitlines() if line.strip()]
        if not replicas:
            logger.warning(f"No services found for swarm stack {stack_name}")
            return StackStatus.ERROR

        for entry in replicas:
            # "1/1", or "1/1 (max 1 per node)" for constrained services
            counts = entry.split()[0].split("/")
            if len(counts) != 2 or not all(count.isdigit() for count in counts):
                logger.warning(f"Unparsable replica count '{entry}' for {stack_name}")
                return StackStatus.ERROR
            if counts[0] != counts[1]:
                return StackStatus.ERROR
        return StackStatus.RUNNING
