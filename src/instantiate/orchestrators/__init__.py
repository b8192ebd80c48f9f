"""
Orchestrator backends.

Repositories pick a backend by name in .instantiate/config.yml. Unknown or
missing names fall back to compose.
"""

import logging
from typing import Dict, Optional, Type

from .base import OrchestratorAdapter
from .compose import DockerComposeAdapter
from .kubernetes import KubernetesAdapter
from .swarm import DockerSwarmAdapter

logger = logging.getLogger(__name__)

DEFAULT_ORCHESTRATOR = "compose"

ADAPTERS: Dict[str, Type[OrchestratorAdapter]] = {
    "compose": DockerComposeAdapter,
    "swarm": DockerSwarmAdapter,
    "kubernetes": KubernetesAdapter,
}


def get_orchestrator_adapter(name: Optional[str] = None) -> OrchestratorAdapter:
    key = (name or DEFAULT_ORCHESTRATOR).strip().lower()
    adapter_class = ADAPTERS.get(key)
    if adapter_class is None:
        logger.warning(f"Unknown orchestrator '{name}', falling back to {DEFAULT_ORCHESTRATOR}")
        adapter_class = ADAPTERS[DEFAULT_ORCHESTRATOR]
    return adapter_class()


__all__ = [
    "ADAPTERS",
    "DEFAULT_ORCHESTRATOR",
    "DockerComposeAdapter",
    "DockerSwarmAdapter",
    "KubernetesAdapter",
    "OrchestratorAdapter",
    "get_orchestrator_adapter",
]
