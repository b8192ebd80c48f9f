"""docker compose backend: one compose project per stack."""

import logging
from pathlib import Path
from typing import Union

from ..models import StackStatus
from ..process import CommandError, run_command
from .base import OrchestratorAdapter

logger = logging.getLogger(__name__)


class DockerComposeAdapter(OrchestratorAdapter):
    name = "compose"
    manifest_name = "docker-compose.rendered.yml"

    def _base_command(self, stack_name: str):
        return ["docker", "compose", "-p", stack_name, "-f", self.manifest_name]

    async def up(self, work_dir: Union[str, Path], stack_name: str) -> None:
        cmd = self._base_command(stack_name) + ["up", "-d", "--force-recreate", "--build"]
        logger.info(f"Starting compose project {stack_name} in {work_dir}")
        await run_command(cmd, cwd=work_dir, log_prefix="compose")

    async def down(self, work_dir: Union[str, Path], stack_name: str) -> None:
        if not Path(work_dir).is_dir():
            logger.warning(f"Working directory {work_dir} is gone, nothing to stop for {stack_name}")
            return
        if (Path(work_dir) / self.manifest_name).is_file():
            cmd = self._base_command(stack_name)
        else:
            # Never rendered: the project is still found by its labels
            cmd = ["docker", "compose", "-p", stack_name]
        cmd += ["down", "--volumes", "--rmi", "local"]
        logger.info(f"Stopping compose project {stack_name}")
        await run_command(cmd, cwd=work_dir, log_prefix="compose")

    async def check_health(self, stack_name: str) -> StackStatus:
        cmd = [
            "docker",
            "ps",
            "-a",
            "--filter",
            f"label=com.docker.compose.project={stack_name}",
            "--format",
            "{{.State}}",
        ]
        try:
            result = await run_command(cmd, stream=False)
        except CommandError as e:
            logger.error(f"Health check failed for compose project {stack_name}: {e}")
            return StackStatus.ERROR

        states = [line.strip() for line in result.output.splitlines() if line.strip()]
        if not states:
            logger.warning(f"No containers found for compose project {stack_name}")
            return StackStatus.ERROR
        if all(state == "running" for state in states):
            return StackStatus.RUNNING
        return StackStatus.ERROR
