"""
GitHub webhook parsing.

Handles X-GitHub-Event "pull_request" and "issue_comment". A comment equal to
the redeploy command on a pull request triggers a forced deploy using the pull
request's current details, fetched from the REST API.
"""

import logging
from typing import Any, Dict, Optional

from .. import api_client
from ..config import InstantiateConfig
from ..models import CanonicalEvent, Handled, MergeRequestStatus, ParseOutcome, Provider, Skipped
from .urls import inject_credentials_if_missing, rewrite_localhost

logger = logging.getLogger(__name__)

CLOSED_STATES = ("closed", "merged")


def is_deploy_command(comment: Optional[str], command: str) -> bool:
    if not comment:
        return False
    return comment.strip().lower() == command.strip().lower()


def _clone_url(repository: Dict[str, Any], config: InstantiateConfig) -> str:
    url = repository.get("clone_url") or ""
    if config.is_development:
        url = rewrite_localhost(url, config.dev_host_alias)
    return inject_credentials_if_missing(url, config.github_username, config.github_token)


def build_github_event(
    pull_request: Dict[str, Any],
    repository: Dict[str, Any],
    status: MergeRequestStatus,
    config: InstantiateConfig,
) -> CanonicalEvent:
    head = pull_request.get("head") or {}
    return CanonicalEvent(
        project_id=str(repository["id"]),
        mr_id=str(pull_request["id"]),
        mr_display_id=str(pull_request["number"]),
        project_name=repository.get("full_name") or repository.get("name", ""),
        title=pull_request.get("title") or "",
        branch=head.get("ref", ""),
        commit_sha=head.get("sha", ""),
        author=(pull_request.get("user") or {}).get("login", ""),
        clone_url=_clone_url(repository, config),
        full_name=repository.get("full_name", ""),
        provider=Provider.GITHUB,
        status=status,
    )


def pull_request_status(action: Optional[str], pull_request: Dict[str, Any]) -> MergeRequestStatus:
    if action == "closed" or pull_request.get("state") in CLOSED_STATES or pull_request.get("merged"):
        return MergeRequestStatus.CLOSED
    return MergeRequestStatus.OPEN


async def fetch_pull_request(full_name: str, number: Any, config: InstantiateConfig) -> Optional[Dict[str, Any]]:
    """Current pull request details, or None when they cannot be fetched."""
    headers = {"Accept": "application/vnd.github+json", "User-Agent": "InstantiateBot"}
    if config.github_token:
        headers["Authorization"] = f"Bearer {config.github_token}"

    url = f"{config.github_api_url.rstrip('/')}/repos/{full_name}/pulls/{number}"
    try:
        return await api_client.request_json("GET", url, headers=headers)
    except api_client.ApiError as e:
        logger.warning(f"Could not fetch pull request {full_name}#{number}: {e}")
        return None


async def parse_github_webhook(
    body: Dict[str, Any], event_kind: Optional[str], config: InstantiateConfig
) -> ParseOutcome:
    if event_kind == "pull_request":
        pull_request = body["pull_request"]
        status = pull_request_status(body.get("action"), pull_request)
        event = build_github_event(pull_request, body["repository"], status, config)
        return Handled(event=event, force_deploy=False)

    if event_kind == "issue_comment":
        issue = body.get("issue") or {}
        if not issue.get("pull_request"):
            return Skipped("comment_not_pr")

        if not is_deploy_command((body.get("comment") or {}).get("body"), config.redeploy_command):
            return Skipped("comment_not_command")

        repository = body["repository"]
        details = await fetch_pull_request(repository["full_name"], issue.get("number"), config)
        if not details:
            return Skipped("missing_pull_request")

        # The command redeploys even a closed pull request
        event = build_github_event(details, repository, MergeRequestStatus.OPEN, config)
        logger.info(f"Redeploy requested on {repository['full_name']}#{event.mr_display_id}")
        return Handled(event=event, force_deploy=True)

    return Skipped("unsupported_event")
