"""
Environment lifecycle for Instantiate.

Working directories, repository checkouts, stack configuration, port leases,
manifest rendering and the deploy/destroy sequences built on top of them.
"""

from .git import GitClient
from .names import build_stack_name, sanitize_name
from .port_allocator import NoAvailablePortError, PortAllocator
from .stack_config import StackConfig, StackConfigError, load_stack_config
from .stack_manager import StackManager
from .substitution import ManifestValidationError, TemplateRenderer, validate_manifest
from .workspace import WorkspaceError, working_directory_for

__all__ = [
    "GitClient",
    "ManifestValidationError",
    "NoAvailablePortError",
    "PortAllocator",
    "StackConfig",
    "StackConfigError",
    "StackManager",
    "TemplateRenderer",
    "WorkspaceError",
    "build_stack_name",
    "load_stack_config",
    "sanitize_name",
    "validate_manifest",
    "working_directory_for",
]
