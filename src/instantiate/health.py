"""
Periodic reconciliation of stack status.

Only the status column of stack records is written here; ports and working
directories belong to the lifecycle manager.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from .environment.names import build_stack_name
from .models import StackRecord, StackStatus
from .orchestrators import OrchestratorAdapter, get_orchestrator_adapter
from .store import Store

logger = logging.getLogger(__name__)


class HealthChecker:
    """Asks each stack's backend for its state and records changes."""

    def __init__(
        self,
        store: Store,
        adapter_factory: Callable[[Optional[str]], OrchestratorAdapter] = get_orchestrator_adapter,
    ):
        self.store = store
        self.adapter_factory = adapter_factory

    async def check_stack(self, record: StackRecord) -> StackStatus:
        adapter = self.adapter_factory(record.orchestrator)
        stack_name = build_stack_name(record.project_name, record.mr_name)
        return await adapter.check_health(stack_name)

    async def check_all_stacks(self) -> Dict[str, StackStatus]:
        """
        Check every recorded stack once.

        Returns:
            Mapping of "project_id/mr_id" to the observed status
        """
        results = {}
        for record in self.store.list_stacks():
            key = f"{record.project_id}/{record.mr_id}"
            status = await self.check_stack(record)
            results[key] = status
            if status != record.status:
                logger.info(
                    f"Stack {record.project_name}/{record.mr_name} changed from "
                    f"{record.status.value} to {status.value}"
                )
                self.store.update_stack_status(record.project_id, record.mr_id, status)
        return results

    async def run_forever(self, interval: float = 30.0) -> None:
        logger.info(f"Health checker started (every {interval:.0f}s)")
        while True:
            try:
                await self.check_all_stacks()
            except Exception as e:
                logger.error(f"Health check pass failed: {e}")
            await asyncio.sleep(interval)
