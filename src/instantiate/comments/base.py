"""
Pieces shared by the provider commenters.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from .. import api_client
from ..models import DeploymentStatus

logger = logging.getLogger(__name__)

# Marker embedded in every bot comment so earlier ones can be found again
COMMENT_SIGNATURE = "<!-- instantiate-comment -->"


def generate_comment(status: DeploymentStatus, links: Optional[Mapping[str, str]] = None) -> str:
    if status == DeploymentStatus.IN_PROGRESS:
        message = "Deployment in progress..."
    elif status == DeploymentStatus.READY:
        message = "\n".join(f"🔗 [{name}]({url})" for name, url in (links or {}).items())
    elif status == DeploymentStatus.CLOSED:
        message = "Stack destroyed due to merge request closure."
    else:
        message = "Deployment failed."
    return f"{COMMENT_SIGNATURE}\n{message}"


class BaseCommenter:
    """Builds authenticated API headers from a token and a header template."""

    provider = ""

    def __init__(self, token: Optional[str], header_template: Dict[str, str], verify_ssl: bool = True):
        self.token = token
        self.header_template = header_template
        self.verify_ssl = verify_ssl

    def get_headers(self) -> Optional[Dict[str, str]]:
        """Headers with {token} filled in, or None without a token."""
        if not self.token:
            return None
        return {key: value.replace("{token}", self.token) for key, value in self.header_template.items()}

    async def _request(self, method: str, url: str, json_data: Optional[Dict[str, Any]] = None) -> Any:
        return await api_client.request_json(
            method,
            url,
            headers=self.get_headers(),
            json_data=json_data,
            verify_ssl=self.verify_ssl,
        )
