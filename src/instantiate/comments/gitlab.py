"""Merge request status notes on GitLab."""

import logging
from typing import Mapping, Optional

from ..api_client import ApiError
from ..config import InstantiateConfig
from ..models import CanonicalEvent, DeploymentStatus
from ..webhooks.urls import gitlab_api_url
from .base import COMMENT_SIGNATURE, BaseCommenter, generate_comment

logger = logging.getLogger(__name__)

GITLAB_HEADERS = {
    "PRIVATE-TOKEN": "{token}",
    "Accept": "application/json",
    "User-Agent": "InstantiateBot",
}


class GitLabCommenter(BaseCommenter):
    """Replaces earlier signed notes with a fresh one on every status change."""

    provider = "gitlab"

    def __init__(self, config: InstantiateConfig):
        super().__init__(config.gitlab_token, GITLAB_HEADERS, verify_ssl=not config.ignore_ssl_errors)

    def _notes_url(self, event: CanonicalEvent) -> str:
        api_url = gitlab_api_url(event.clone_url)
        return f"{api_url}/projects/{event.project_id}/merge_requests/{event.mr_display_id}/notes"

    async def remove_previous_status_comments(self, event: CanonicalEvent) -> None:
        notes_url = self._notes_url(event)
        try:
            notes = await self._request("GET", notes_url)
        except ApiError as e:
            logger.warning(f"Unable to read notes of MR !{event.mr_display_id}: {e}")
            return
        if not isinstance(notes, list):
            logger.warning(f"Unexpected notes response for MR !{event.mr_display_id}")
            return

        for note in notes:
            if COMMENT_SIGNATURE in (note.get("body") or ""):
                await self._request("DELETE", f"{notes_url}/{note['id']}")
                logger.info(f"Deleted previous note {note['id']} for MR !{event.mr_display_id}")

    async def post_status_comment(
        self,
        event: CanonicalEvent,
        status: DeploymentStatus,
        links: Optional[Mapping[str, str]] = None,
    ) -> None:
        if not self.get_headers():
            logger.warning("GitLab token not found, skipping comment")
            return

        await self.remove_previous_status_comments(event)
        await self._request("POST", self._notes_url(event), {"body": generate_comment(status, links)})
        logger.info(f"Posted {status.value} comment for MR !{event.mr_display_id}")
