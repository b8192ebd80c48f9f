"""
Common contract of the orchestrator backends.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Union

from ..models import StackStatus

logger = logging.getLogger(__name__)


class OrchestratorAdapter(ABC):
    """
    Starts, stops and inspects one stack on a backend.

    up and down raise CommandError when the backend command fails.
    check_health never raises: anything unexpected is reported as ERROR so the
    health loop keeps running.
    """

    name = ""
    manifest_name = "docker-compose.rendered.yml"

    def stack_directory(self, config_dir: Union[str, Path]) -> Path:
        """
        Directory the rendered manifest is written to and the backend runs in.

        Compose files resolve relative build contexts and bind mounts from
        their own directory, so the manifest sits next to its template.
        """
        return Path(config_dir)

    @abstractmethod
    async def up(self, work_dir: Union[str, Path], stack_name: str) -> None:
        ...

    @abstractmethod
    async def down(self, work_dir: Union[str, Path], stack_name: str) -> None:
        ...

    @abstractmethod
    async def check_health(self, stack_name: str) -> StackStatus:
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
