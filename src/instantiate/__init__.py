"""
Instantiate: preview environments per merge request

Turns GitHub pull request and GitLab merge request webhooks into short-lived
stacks running on docker compose, docker swarm or kubernetes.
"""

__version__ = "0.1.0"

from .config import InstantiateConfig
from .logging_config import setup_logging

__all__ = [
    "InstantiateConfig",
    "setup_logging",
]
