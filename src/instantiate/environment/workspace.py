"""
Per merge request working directories.

Layout: {working_path}/instantiate/{project_id}/{mr_id}/ holding the primary
checkout, one subdirectory per side repository and the .instantiate
configuration directory holding the manifest template and its rendered
copy (kubernetes renders into .instantiate/rendered/).
"""

import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Union

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAY = 0.5


class WorkspaceError(Exception):
    """Working directory could not be created or removed."""


def working_directory_for(working_path: Union[str, Path], project_id: str, mr_id: str) -> Path:
    return Path(working_path) / "instantiate" / str(project_id) / str(mr_id)


def _with_retries(action: Callable[[], None], description: str, delay: float) -> None:
    last_error = None
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            action()
            return
        except OSError as e:
            last_error = e
            logger.warning(f"{description} failed (attempt {attempt}/{MAX_ATTEMPTS}): {e}")
            if attempt < MAX_ATTEMPTS and delay:
                time.sleep(delay)
    raise WorkspaceError(f"{description} failed after {MAX_ATTEMPTS} attempts: {last_error}")


def remove_directory(path: Union[str, Path], delay: float = RETRY_DELAY) -> None:
    """Remove a directory tree; a missing directory is already clean."""
    path = Path(path)

    def _remove():
        if path.exists():
            shutil.rmtree(path)

    _with_retries(_remove, f"Removing {path}", delay)


def create_directory(path: Union[str, Path], delay: float = RETRY_DELAY) -> None:
    path = Path(path)
    _with_retries(lambda: path.mkdir(parents=True, exist_ok=True), f"Creating {path}", delay)


def recreate_directory(path: Union[str, Path], delay: float = RETRY_DELAY) -> Path:
    """Start from an empty directory at path."""
    remove_directory(path, delay)
    create_directory(path, delay)
    logger.info(f"Working directory ready: {path}")
    return Path(path)
