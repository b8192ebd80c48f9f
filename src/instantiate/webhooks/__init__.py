"""
Webhook normalization.

Turns GitHub and GitLab webhook payloads into a CanonicalEvent (Handled) or a
machine readable skip reason (Skipped). The ingress layer passes the raw JSON
body and the request headers; everything HTTP related stays with it.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from ..config import InstantiateConfig
from ..models import ParseOutcome, Provider, Skipped
from .github import parse_github_webhook
from .gitlab import parse_gitlab_webhook
from .urls import gitlab_api_url, inject_credentials_if_missing, rewrite_localhost

logger = logging.getLogger(__name__)

EVENT_HEADERS = {
    "x-github-event": Provider.GITHUB,
    "x-gitlab-event": Provider.GITLAB,
}


def detect_provider(headers: Mapping[str, str]) -> Optional[Tuple[Provider, str]]:
    """Provider and event kind announced by the request headers."""
    lowered = {key.lower(): value for key, value in headers.items()}
    for header, provider in EVENT_HEADERS.items():
        if lowered.get(header):
            return provider, lowered[header]
    return None


async def parse_webhook(
    provider: Provider, body: Dict[str, Any], event_kind: Optional[str], config: InstantiateConfig
) -> ParseOutcome:
    if provider == Provider.GITHUB:
        return await parse_github_webhook(body, event_kind, config)
    if provider == Provider.GITLAB:
        return await parse_gitlab_webhook(body, event_kind, config)
    return Skipped("unsupported_event")


async def normalize_webhook(
    headers: Mapping[str, str], body: Dict[str, Any], config: InstantiateConfig
) -> ParseOutcome:
    """Detect the provider from headers, then parse the body."""
    detected = detect_provider(headers)
    if detected is None:
        logger.info("Webhook without a GitHub or GitLab event header, ignoring")
        return Skipped("unsupported_event")

    provider, event_kind = detected
    outcome = await parse_webhook(provider, body, event_kind, config)
    if isinstance(outcome, Skipped):
        logger.info(f"Skipped {provider.value} '{event_kind}' webhook: {outcome.reason}")
    else:
        logger.info(
            f"Handled {provider.value} '{event_kind}' webhook for "
            f"{outcome.event.full_name} #{outcome.event.mr_display_id} ({outcome.event.status.value})"
        )
    return outcome


__all__ = [
    "detect_provider",
    "gitlab_api_url",
    "inject_credentials_if_missing",
    "normalize_webhook",
    "parse_github_webhook",
    "parse_gitlab_webhook",
    "parse_webhook",
    "rewrite_localhost",
]
