"""Pull request status comments on GitHub, edited in place."""

import logging
from typing import Mapping, Optional

from ..config import InstantiateConfig
from ..models import CanonicalEvent, DeploymentStatus
from ..store import Store
from .base import BaseCommenter, generate_comment

logger = logging.getLogger(__name__)

GITHUB_HEADERS = {
    "Authorization": "Bearer {token}",
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
    "User-Agent": "InstantiateBot",
}


def split_full_name(full_name: str):
    """'owner/repository' -> ('owner', 'repository')."""
    parts = full_name.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid GitHub repository name: {full_name}")
    return parts[0], parts[1]


class GitHubCommenter(BaseCommenter):
    """
    Keeps one status comment per pull request.

    The id of the first comment is stored with the merge request and every
    later status edits that comment.
    """

    provider = "github"

    def __init__(self, config: InstantiateConfig, store: Store):
        super().__init__(config.github_token, GITHUB_HEADERS)
        self.api_url = config.github_api_url.rstrip("/")
        self.store = store

    async def post_status_comment(
        self,
        event: CanonicalEvent,
        status: DeploymentStatus,
        links: Optional[Mapping[str, str]] = None,
    ) -> None:
        if not self.get_headers():
            logger.warning("GitHub token not found, skipping comment")
            return

        owner, repository = split_full_name(event.full_name)
        body = {"body": generate_comment(status, links)}
        existing = self.store.get_comment_id(event.project_id, event.mr_id)

        if existing:
            url = f"{self.api_url}/repos/{owner}/{repository}/issues/comments/{existing}"
            await self._request("PATCH", url, body)
            logger.info(f"Updated {status.value} comment for PR #{event.mr_display_id}")
            return

        url = f"{self.api_url}/repos/{owner}/{repository}/issues/{event.mr_display_id}/comments"
        result = await self._request("POST", url, body)
        if result and result.get("id") is not None:
            self.store.set_comment_id(event.project_id, event.mr_id, str(result["id"]))
        logger.info(f"Posted {status.value} comment for PR #{event.mr_display_id}")
