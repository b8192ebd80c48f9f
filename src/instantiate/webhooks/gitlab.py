"""
GitLab webhook parsing.

Handles X-Gitlab-Event "Merge Request Hook" and "Note Hook". Notes only count
when they are posted on a merge request and equal the redeploy command.
"""

import logging
from typing import Any, Dict, Optional

from .. import api_client
from ..config import InstantiateConfig
from ..models import CanonicalEvent, Handled, MergeRequestStatus, ParseOutcome, Provider, Skipped
from .github import CLOSED_STATES, is_deploy_command
from .urls import gitlab_api_url, inject_credentials_if_missing, rewrite_localhost

logger = logging.getLogger(__name__)


def merge_request_status(state: Optional[str]) -> MergeRequestStatus:
    return MergeRequestStatus.CLOSED if state in CLOSED_STATES else MergeRequestStatus.OPEN


def _clone_url(project: Dict[str, Any], config: InstantiateConfig) -> str:
    url = project.get("git_http_url") or project.get("http_url") or ""
    if config.is_development:
        url = rewrite_localhost(url, config.dev_host_alias)
    return inject_credentials_if_missing(url, config.gitlab_username, config.gitlab_token)


def _author(merge_request: Dict[str, Any], body: Dict[str, Any]) -> str:
    author = merge_request.get("author")
    if isinstance(author, dict) and author.get("username"):
        return author["username"]
    user = body.get("user") or {}
    if user.get("username"):
        return user["username"]
    return str(merge_request.get("author_id", ""))


def _commit_sha(merge_request: Dict[str, Any]) -> str:
    last_commit = merge_request.get("last_commit") or {}
    return last_commit.get("id") or merge_request.get("sha") or ""


def build_gitlab_event(
    merge_request: Dict[str, Any],
    project: Dict[str, Any],
    status: MergeRequestStatus,
    author: str,
    config: InstantiateConfig,
) -> CanonicalEvent:
    return CanonicalEvent(
        project_id=str(project["id"]),
        mr_id=str(merge_request["id"]),
        mr_display_id=str(merge_request["iid"]),
        project_name=project.get("name", ""),
        title=merge_request.get("title") or "",
        branch=merge_request.get("source_branch", ""),
        commit_sha=_commit_sha(merge_request),
        author=author,
        clone_url=_clone_url(project, config),
        full_name=project.get("path_with_namespace") or str(project["id"]),
        provider=Provider.GITLAB,
        status=status,
    )


async def fetch_merge_request(
    project: Dict[str, Any], iid: Any, config: InstantiateConfig
) -> Optional[Dict[str, Any]]:
    """Current merge request details from the API, or None on failure."""
    try:
        api_url = gitlab_api_url(project.get("web_url") or project.get("git_http_url") or "")
    except ValueError as e:
        logger.warning(f"Cannot derive GitLab API URL: {e}")
        return None

    url = f"{api_url}/projects/{project['id']}/merge_requests/{iid}"
    headers = {"PRIVATE-TOKEN": config.gitlab_token or "", "Accept": "application/json"}
    try:
        return await api_client.request_json(
            "GET", url, headers=headers, verify_ssl=not config.ignore_ssl_errors
        )
    except api_client.ApiError as e:
        logger.warning(f"Could not fetch merge request !{iid} of project {project['id']}: {e}")
        return None


async def parse_gitlab_webhook(
    body: Dict[str, Any], event_kind: Optional[str], config: InstantiateConfig
) -> ParseOutcome:
    if event_kind == "Merge Request Hook":
        merge_request = body["object_attributes"]
        event = build_gitlab_event(
            merge_request,
            body["project"],
            merge_request_status(merge_request.get("state")),
            _author(merge_request, body),
            config,
        )
        return Handled(event=event, force_deploy=False)

    if event_kind == "Note Hook":
        attributes = body.get("object_attributes") or {}
        if attributes.get("noteable_type") != "MergeRequest":
            return Skipped("unsupported_noteable")

        if not is_deploy_command(attributes.get("note"), config.redeploy_command):
            return Skipped("comment_not_command")

        project = body["project"]
        merge_request = body.get("merge_request")
        if not merge_request:
            return Skipped("missing_merge_request")

        if config.gitlab_token:
            merge_request = await fetch_merge_request(project, merge_request["iid"], config)
            if not merge_request:
                return Skipped("missing_merge_request")

        # The command redeploys even a closed merge request
        event = build_gitlab_event(
            merge_request,
            project,
            MergeRequestStatus.OPEN,
            _author(merge_request, body),
            config,
        )
        logger.info(f"Redeploy requested on {event.full_name}!{event.mr_display_id}")
        return Handled(event=event, force_deploy=True)

    return Skipped("unsupported_event")
