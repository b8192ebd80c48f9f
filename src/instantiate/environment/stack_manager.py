"""
Deploy and destroy of per merge request stacks.

Deploy sequence:
    1. mark the merge request in progress and say so on the merge request
    2. recreate the working directory
    3. clone the primary repository at the event branch
    4. load .instantiate/config.yml (missing config or template: stop quietly)
    5. clone side repositories
    6. run prebuild containers
    7. lease host ports
    8. render the backend manifest
    9. validate the rendered manifest
   10. start the stack, record it and post its links

Any failure from step 2 on is reported on the merge request, flips an
existing stack record to error and is raised again.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from ..comments import get_commenter
from ..config import InstantiateConfig
from ..container_runtime import ContainerRuntime
from ..models import (
    CanonicalEvent,
    DeploymentStatus,
    MergeRequestState,
    Provider,
    StackRecord,
    StackStatus,
)
from ..orchestrators import DEFAULT_ORCHESTRATOR, OrchestratorAdapter, get_orchestrator_adapter
from ..store import Store
from ..webhooks.urls import inject_credentials_if_missing, rewrite_localhost
from .git import GitClient
from .names import build_stack_name
from .port_allocator import PortAllocator
from .stack_config import CONFIG_DIR, StackConfig, StackConfigError, config_path_for, load_stack_config
from .substitution import TemplateRenderer, validate_manifest
from .workspace import recreate_directory, remove_directory, working_directory_for

logger = logging.getLogger(__name__)


def service_variable_prefix(service_name: str) -> str:
    """'my-api' -> 'MY_API'."""
    return re.sub(r"[^A-Za-z0-9]", "_", service_name).upper()


def port_slot_names(service_name: str, count: int):
    prefix = service_variable_prefix(service_name)
    if count == 1:
        return [f"{prefix}_PORT"]
    return [f"{prefix}_PORT_{n}" for n in range(1, count + 1)]


class StackManager:
    """Runs the deploy and destroy sequences for merge request events."""

    def __init__(
        self,
        config: InstantiateConfig,
        store: Store,
        port_allocator: Optional[PortAllocator] = None,
        runtime: Optional[ContainerRuntime] = None,
        git: Optional[GitClient] = None,
        commenter_factory: Callable = get_commenter,
        adapter_factory: Callable[[Optional[str]], OrchestratorAdapter] = get_orchestrator_adapter,
    ):
        self.config = config
        self.store = store
        self.runtime = runtime or ContainerRuntime(config)
        self.port_allocator = port_allocator or PortAllocator.from_config(config, store, self.runtime)
        self.git = git or GitClient(ignore_ssl_errors=config.ignore_ssl_errors)
        self.commenter_factory = commenter_factory
        self.adapter_factory = adapter_factory
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def _exclusive(self, event: CanonicalEvent):
        """One deploy or destroy at a time per merge request."""
        key = event.key
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def working_directory(self, event: CanonicalEvent) -> Path:
        return working_directory_for(self.config.working_path, event.project_id, event.mr_id)

    async def _post_comment(self, commenter, event: CanonicalEvent, status: DeploymentStatus, links=None) -> None:
        """Status comments never change the outcome of a deploy or destroy."""
        try:
            await commenter.post_status_comment(event, status, links)
        except Exception as e:
            logger.error(f"Failed to post {status.value} comment on MR #{event.mr_display_id}: {e}")

    def _provider_credentials(self, provider: Provider) -> Tuple[Optional[str], Optional[str]]:
        if provider == Provider.GITHUB:
            return self.config.github_username, self.config.github_token
        return self.config.gitlab_username, self.config.gitlab_token

    def _side_repository_url(self, url: str, provider: Provider) -> str:
        if self.config.is_development:
            url = rewrite_localhost(url, self.config.dev_host_alias)
        username, token = self._provider_credentials(provider)
        return inject_credentials_if_missing(url, username, token)

    def _base_context(self, event: CanonicalEvent, project_key: str, work_dir: Path, stack_name: str) -> Dict[str, str]:
        return {
            "MR_ID": event.mr_id,
            "MR_IID": event.mr_display_id,
            "PROJECT_KEY": project_key,
            "PROJECT_ID": event.project_id,
            "PROJECT_NAME": event.project_name,
            "BRANCH": event.branch,
            "COMMIT_SHA": event.commit_sha,
            "STACK_NAME": stack_name,
            "WORKDIR": str(work_dir),
            "HOST_DOMAIN": self.config.host_domain,
            "HOST_SCHEME": self.config.host_scheme,
            "HOST_DNS": self.config.host_dns,
        }

    async def _clone_side_repositories(
        self, event: CanonicalEvent, stack_config: StackConfig, work_dir: Path
    ) -> Dict[str, str]:
        variables = {}
        for name, service in stack_config.services.items():
            repository = service.repository
            if repository is None:
                continue

            url = self._side_repository_url(repository.repo, event.provider)
            branch = repository.branch
            if repository.behavior == "match" and event.branch != branch:
                if await self.git.remote_branch_exists(url, event.branch):
                    logger.info(f"Side repository of {name} has branch {event.branch}, using it")
                    branch = event.branch
                else:
                    logger.info(f"Side repository of {name} has no branch {event.branch}, using {branch or 'default'}")

            destination = work_dir / name
            await self.git.clone(url, destination, branch)
            variables[f"{service_variable_prefix(name)}_PATH"] = str(destination)
        return variables

    async def _run_prebuilds(self, stack_config: StackConfig, work_dir: Path) -> None:
        for name, service in stack_config.services.items():
            prebuild = service.prebuild
            if prebuild is None:
                continue
            host_path = work_dir / name if service.repository else work_dir
            logger.info(f"Running prebuild for {name}")
            await self.runtime.run_prebuild(prebuild.image, host_path, prebuild.mountpath, prebuild.commands)

    async def _allocate_ports(
        self, event: CanonicalEvent, stack_config: StackConfig, stack_name: str
    ) -> Tuple[Dict[str, int], Dict[str, str]]:
        ports: Dict[str, int] = {}
        links: Dict[str, str] = {}
        for name, service in stack_config.services.items():
            for slot_name in port_slot_names(name, service.ports):
                port = await self.port_allocator.allocate(
                    event.project_id, event.mr_id, name, slot_name, stack_name=stack_name
                )
                ports[slot_name] = port
                links.setdefault(name, f"{self.config.host_dns}:{port}")
        return ports, links

    async def deploy(self, event: CanonicalEvent, project_key: str) -> Optional[str]:
        """
        Deploy (or redeploy) the stack of a merge request.

        Returns:
            The host DNS base the stack is published under, or None when the
            repository carries no stack configuration or manifest template
        """
        async with self._exclusive(event):
            return await self._deploy(event, project_key)

    async def _deploy(self, event: CanonicalEvent, project_key: str) -> Optional[str]:
        logger.info(f"Deploying MR #{event.mr_display_id} of {event.full_name} ({event.branch}@{event.commit_sha[:8]})")
        commenter = self.commenter_factory(event.provider, self.config, self.store)

        self.store.update_merge_request(event, MergeRequestState.IN_PROGRESS)
        await self._post_comment(commenter, event, DeploymentStatus.IN_PROGRESS)

        work_dir = self.working_directory(event)
        stack_name = build_stack_name(event.project_name, event.title)

        try:
            await asyncio.to_thread(recreate_directory, work_dir)
            await self.git.clone(event.clone_url, work_dir, event.branch)

            stack_config = load_stack_config(work_dir)
            if stack_config is None:
                logger.warning(f"No {config_path_for(work_dir).relative_to(work_dir)} in {event.full_name}, nothing to deploy")
                return None
            template_path = stack_config.template_path(work_dir)
            if not template_path.is_file():
                logger.warning(f"Manifest template {template_path.name} missing in {event.full_name}, nothing to deploy")
                return None

            adapter = self.adapter_factory(stack_config.orchestrator)
            context = self._base_context(event, project_key, work_dir, stack_name)
            context.update(await self._clone_side_repositories(event, stack_config, work_dir))
            await self._run_prebuilds(stack_config, work_dir)

            ports, links = await self._allocate_ports(event, stack_config, stack_name)
            context.update({slot: str(port) for slot, port in ports.items()})

            stack_dir = adapter.stack_directory(work_dir / CONFIG_DIR)
            manifest_path = stack_dir / adapter.manifest_name
            TemplateRenderer(context).render_file(template_path, manifest_path)
            validate_manifest(manifest_path)

            await adapter.up(stack_dir, stack_name)

            self.store.save_stack(
                StackRecord(
                    project_id=event.project_id,
                    mr_id=event.mr_id,
                    project_name=event.project_name,
                    mr_name=event.title,
                    provider=event.provider,
                    ports=ports,
                    links=links,
                    status=StackStatus.RUNNING,
                    orchestrator=adapter.name or stack_config.orchestrator,
                )
            )
            self.store.update_merge_request(event, MergeRequestState.OPEN)
        except Exception as e:
            logger.error(f"Deployment of MR #{event.mr_display_id} ({event.full_name}) failed: {e}")
            await self._report_deploy_failure(commenter, event)
            raise

        await self._post_comment(commenter, event, DeploymentStatus.READY, links)
        logger.info(f"Stack {stack_name} is running: {', '.join(links.values()) or 'no published ports'}")
        return self.config.host_dns

    async def _report_deploy_failure(self, commenter, event: CanonicalEvent) -> None:
        await self._post_comment(commenter, event, DeploymentStatus.ERROR)
        try:
            self.store.update_merge_request(event, MergeRequestState.ERROR)
            self.store.update_stack_status(event.project_id, event.mr_id, StackStatus.ERROR)
        except Exception as e:
            logger.error(f"Could not record failure of MR #{event.mr_display_id}: {e}")

    def _orchestrator_for_destroy(self, work_dir: Path, record: Optional[StackRecord]) -> str:
        try:
            stack_config = load_stack_config(work_dir)
        except StackConfigError as e:
            logger.debug(f"Ignoring unreadable stack configuration during destroy: {e}")
            stack_config = None
        if stack_config is not None:
            return stack_config.orchestrator
        if record is not None:
            return record.orchestrator
        return DEFAULT_ORCHESTRATOR

    async def destroy(self, event: CanonicalEvent, project_key: str) -> None:
        """Tear down the stack of a merge request. Safe to repeat."""
        async with self._exclusive(event):
            await self._destroy(event, project_key)

    async def _destroy(self, event: CanonicalEvent, project_key: str) -> None:
        logger.info(f"Destroying stack of MR #{event.mr_display_id} ({event.full_name})")
        commenter = self.commenter_factory(event.provider, self.config, self.store)
        work_dir = self.working_directory(event)

        try:
            record = self.store.get_stack(event.project_id, event.mr_id)
            adapter = self.adapter_factory(self._orchestrator_for_destroy(work_dir, record))
            if record is not None:
                stack_name = build_stack_name(record.project_name, record.mr_name)
            else:
                stack_name = build_stack_name(event.project_name, event.title)

            await adapter.down(adapter.stack_directory(work_dir / CONFIG_DIR), stack_name)
            self.port_allocator.release(event.project_id, event.mr_id)
            self.store.update_merge_request(event, MergeRequestState.CLOSED)
            self.store.remove_stack(event.project_id, event.mr_id)
            await asyncio.to_thread(remove_directory, work_dir)
        except Exception as e:
            logger.error(f"Destroy of MR #{event.mr_display_id} ({event.full_name}) failed: {e}")
            raise

        await self._post_comment(commenter, event, DeploymentStatus.CLOSED)
        logger.info(f"Stack {stack_name} destroyed")
