"""kubectl backend applying the rendered manifest directory."""

import logging
from pathlib import Path
from typing import Union

from ..models import StackStatus
from ..process import CommandError, run_command
from .base import OrchestratorAdapter

logger = logging.getLogger(__name__)


class KubernetesAdapter(OrchestratorAdapter):
    """
    Resources are identified by the manifest's own labels; pods of a stack
    are expected to carry app=<stack name>.
    """

    name = "kubernetes"
    manifest_name = "all.yml"

    def stack_directory(self, config_dir: Union[str, Path]) -> Path:
        # kubectl applies every file of the directory
        return Path(config_dir) / "rendered"

    async def up(self, work_dir: Union[str, Path], stack_name: str) -> None:
        logger.info(f"Applying kubernetes manifests for {stack_name} from {work_dir}")
        await run_command(["kubectl", "apply", "-f", str(work_dir)], log_prefix="kubectl")

    async def down(self, work_dir: Union[str, Path], stack_name: str) -> None:
        if not Path(work_dir).exists():
            logger.warning(f"Manifest directory {work_dir} is gone, nothing to delete for {stack_name}")
            return
        logger.info(f"Deleting kubernetes resources for {stack_name}")
        await run_command(
            ["kubectl", "delete", "-f", str(work_dir), "--ignore-not-found"],
            log_prefix="kubectl",
        )

    async def check_health(self, stack_name: str) -> StackStatus:
        cmd = [
            "kubectl",
            "get",
            "pods",
            "-l",
            f"app={stack_name}",
            "-o",
            "jsonpath={.items[*].status.phase}",
        ]
        try:
            result = await run_command(cmd, stream=False)
        except CommandError as e:
            logger.error(f"Health check failed for kubernetes stack {stack_name}: {e}")
            return StackStatus.ERROR

        phases = result.output.split()
        if not phases:
            logger.warning(f"No pods found for kubernetes stack {stack_name}")
            return StackStatus.ERROR
        if all(phase == "Running" for phase in phases):
            return StackStatus.RUNNING
        return StackStatus.ERROR
