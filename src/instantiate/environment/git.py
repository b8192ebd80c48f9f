"""Thin async wrapper around the git command line."""

import logging
from pathlib import Path
from typing import List, Optional, Union

from ..logging_config import mask_sensitive_data
from ..process import CommandError, run_command

logger = logging.getLogger(__name__)


class GitClient:
    """Clones repositories and probes remote branches."""

    def __init__(self, ignore_ssl_errors: bool = False):
        self.ignore_ssl_errors = ignore_ssl_errors

    def _base_command(self) -> List[str]:
        cmd = ["git"]
        if self.ignore_ssl_errors:
            cmd += ["-c", "http.sslVerify=false"]
        return cmd

    async def clone(self, url: str, destination: Union[str, Path], branch: Optional[str] = None) -> None:
        """Clone url into destination, at branch when given; raises CommandError on failure."""
        logger.info(f"Cloning {mask_sensitive_data(url)} ({branch or 'default branch'}) into {destination}")
        cmd = self._base_command() + ["clone"]
        if branch:
            cmd += ["--branch", branch]
        cmd += [url, str(destination)]
        await run_command(cmd, log_prefix="git")

    async def remote_branch_exists(self, url: str, branch: str) -> bool:
        """
        Whether branch exists on the remote.

        Probe failures are logged and reported as a missing branch.
        """
        cmd = self._base_command() + ["ls-remote", "--heads", url, branch]
        try:
            result = await run_command(cmd, log_prefix="git", stream=False)
        except CommandError as e:
            logger.warning(f"Could not check branch '{branch}' on {mask_sensitive_data(url)}: {e}")
            return False
        return bool(result.output.strip())
