"""
Status comments posted on merge requests.

One commenter per provider, chosen from the event's provider field.
"""

from typing import Union

from ..config import InstantiateConfig
from ..models import Provider
from ..store import Store
from .base import COMMENT_SIGNATURE, BaseCommenter, generate_comment
from .github import GitHubCommenter
from .gitlab import GitLabCommenter

Commenter = Union[GitHubCommenter, GitLabCommenter]


def get_commenter(provider: Provider, config: InstantiateConfig, store: Store) -> Commenter:
    if provider == Provider.GITHUB:
        return GitHubCommenter(config, store)
    if provider == Provider.GITLAB:
        return GitLabCommenter(config)
    raise ValueError(f"Unsupported provider: {provider}")


__all__ = [
    "COMMENT_SIGNATURE",
    "BaseCommenter",
    "Commenter",
    "GitHubCommenter",
    "GitLabCommenter",
    "generate_comment",
    "get_commenter",
]
