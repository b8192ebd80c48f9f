"""
Repository provided stack configuration.

Each repository opts in with .instantiate/config.yml, for example:

    orchestrator: compose
    services:
      web:
        ports: 2
      api:
        ports: 1
        repository:
          repo: https://gitlab.example.com/team/api.git
          branch: main
          behavior: match
        prebuild:
          image: node:20
          mountpath: /app
          commands:
            - npm ci
            - npm run build

The manifest template lives next to it (.instantiate/docker-compose.yml, or
.instantiate/all.yml for kubernetes) unless stackfile names another file.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, validator

logger = logging.getLogger(__name__)

CONFIG_DIR = ".instantiate"
CONFIG_FILE = "config.yml"
DEFAULT_STACKFILES = {
    "compose": "docker-compose.yml",
    "swarm": "docker-compose.yml",
    "kubernetes": "all.yml",
}


class StackConfigError(Exception):
    """config.yml exists but cannot be parsed or validated."""


class SideRepository(BaseModel):
    """Additional repository cloned next to the primary checkout."""
    repo: str = Field(..., description="Clone URL of the side repository")
    branch: Optional[str] = Field(None, description="Branch to clone, remote default when unset")
    behavior: str = Field("fixed", description="fixed: always use branch; match: prefer the merge request branch")

    @validator("behavior")
    def validate_behavior(cls, v):
        """Ensure branch behavior is known."""
        if v not in ("fixed", "match"):
            raise ValueError("behavior must be 'fixed' or 'match'")
        return v


class Prebuild(BaseModel):
    """Commands run in a throwaway container before the stack starts."""
    image: str = Field(..., description="Image the commands run in")
    mountpath: str = Field("/app", description="Mount point of the checkout inside the container")
    commands: List[str] = Field(default_factory=list, description="Shell commands, joined with &&")

    @validator("commands", pre=True)
    def coerce_commands(cls, v):
        if isinstance(v, str):
            return [v]
        return v or []


class ServiceConfig(BaseModel):
    """One service of the stack."""
    ports: int = Field(0, ge=0, description="Number of host ports to allocate")
    repository: Optional[SideRepository] = None
    prebuild: Optional[Prebuild] = None


class StackConfig(BaseModel):
    """Parsed .instantiate/config.yml."""
    orchestrator: str = Field("compose", description="compose, swarm or kubernetes")
    stackfile: Optional[str] = Field(None, description="Manifest template inside .instantiate")
    services: Dict[str, ServiceConfig] = Field(default_factory=dict)

    @validator("services", pre=True)
    def coerce_services(cls, v):
        # `services:` with nothing under it, or a service declared without options
        if not v:
            return {}
        return {name: (options or {}) for name, options in v.items()}

    @validator("orchestrator", pre=True)
    def normalize_orchestrator(cls, v):
        return (v or "compose").strip().lower()

    def get_stackfile(self) -> str:
        if self.stackfile:
            return self.stackfile
        return DEFAULT_STACKFILES.get(self.orchestrator, DEFAULT_STACKFILES["compose"])

    def template_path(self, work_dir: Union[str, Path]) -> Path:
        return Path(work_dir) / CONFIG_DIR / self.get_stackfile()


def config_path_for(work_dir: Union[str, Path]) -> Path:
    return Path(work_dir) / CONFIG_DIR / CONFIG_FILE


def load_stack_config(work_dir: Union[str, Path]) -> Optional[StackConfig]:
    """
    Load the stack configuration of a checkout.

    Returns:
        The parsed configuration, or None when the repository has none

    Raises:
        StackConfigError: If the file is not valid YAML or fails validation
    """
    config_path = config_path_for(work_dir)
    if not config_path.is_file():
        logger.debug(f"No stack configuration at {config_path}")
        return None

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise StackConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e
    except OSError as e:
        raise StackConfigError(f"Failed to read {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise StackConfigError(f"{config_path} must contain a mapping")

    try:
        return StackConfig(**data)
    except ValidationError as e:
        raise StackConfigError(f"Invalid stack configuration in {config_path}: {e}") from e
