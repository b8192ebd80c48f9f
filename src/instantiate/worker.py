"""
Event dispatch between webhook receipt and stack lifecycle execution.

The wire payload is JSON: {"event": {...}, "projectKey": "...", "forceDeploy": bool}.
Any queue with at-least-once delivery of these messages works; consume()
drains an asyncio.Queue for single-process setups.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

from .environment.stack_manager import StackManager
from .models import CanonicalEvent, Handled, MergeRequestStatus, StackStatus
from .store import Store

logger = logging.getLogger(__name__)


class MessageError(ValueError):
    """Queue message is not a valid event payload."""


@dataclass(frozen=True)
class EventMessage:
    event: CanonicalEvent
    project_key: str
    force_deploy: bool = False


def encode_message(event: CanonicalEvent, project_key: str, force_deploy: bool = False) -> str:
    return json.dumps(
        {"event": event.to_dict(), "projectKey": project_key, "forceDeploy": force_deploy}
    )


def message_from_outcome(outcome: Handled, project_key: str) -> EventMessage:
    return EventMessage(event=outcome.event, project_key=project_key, force_deploy=outcome.force_deploy)


def decode_message(raw: Union[str, bytes]) -> EventMessage:
    try:
        data = json.loads(raw)
        return EventMessage(
            event=CanonicalEvent.from_dict(data["event"]),
            project_key=str(data.get("projectKey", "")),
            force_deploy=bool(data.get("forceDeploy", False)),
        )
    except (ValueError, KeyError, TypeError) as e:
        raise MessageError(f"Invalid event message: {e}") from e


class EventWorker:
    """Routes open events to deploy and closed events to destroy."""

    def __init__(self, manager: StackManager, store: Store):
        self.manager = manager
        self.store = store

    def is_up_to_date(self, event: CanonicalEvent) -> bool:
        """Same commit already deployed and the stack is running."""
        last_sha = self.store.get_last_commit_sha(event.project_id, event.mr_id)
        if not last_sha or last_sha != event.commit_sha:
            return False
        record = self.store.get_stack(event.project_id, event.mr_id)
        return record is not None and record.status == StackStatus.RUNNING

    async def handle(self, message: EventMessage) -> Optional[str]:
        event = message.event
        if event.status == MergeRequestStatus.CLOSED:
            await self.manager.destroy(event, message.project_key)
            return None

        if not message.force_deploy and self.is_up_to_date(event):
            logger.info(
                f"MR #{event.mr_display_id} of {event.full_name} already running at "
                f"{event.commit_sha[:8]}, skipping deploy"
            )
            return None
        return await self.manager.deploy(event, message.project_key)

    async def handle_raw(self, raw: Union[str, bytes]) -> Optional[str]:
        return await self.handle(decode_message(raw))

    async def consume(self, queue: "asyncio.Queue") -> None:
        """Process queued messages forever; one failing message never stops the loop."""
        while True:
            raw = await queue.get()
            try:
                await self.handle_raw(raw)
            except Exception as e:
                logger.error(f"Failed to process event message: {e}")
            finally:
                queue.task_done()
