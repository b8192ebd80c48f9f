"""
Persistence interface for merge requests, port leases and stacks.

The lifecycle manager, the port allocator, the commenters and the health
checker only talk to a Store. PostgresStore (database.py) is the production
implementation; InMemoryStore backs tests and single-process runs.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from .models import (
    CanonicalEvent,
    MergeRequestState,
    PortLease,
    StackRecord,
    StackStatus,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the persistence backend fails."""


class Store(ABC):
    """Ledger of merge requests, port leases and stack records."""

    # Merge requests

    @abstractmethod
    def update_merge_request(self, event: CanonicalEvent, state: MergeRequestState) -> None:
        """Upsert the merge request row and record the event's commit sha."""

    @abstractmethod
    def get_merge_request_state(self, project_id: str, mr_id: str) -> Optional[MergeRequestState]:
        ...

    @abstractmethod
    def get_last_commit_sha(self, project_id: str, mr_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def get_comment_id(self, project_id: str, mr_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_comment_id(self, project_id: str, mr_id: str, comment_id: str) -> None:
        ...

    # Port leases

    @abstractmethod
    def get_lease(
        self, project_id: str, mr_id: str, service: str, slot_name: str
    ) -> Optional[PortLease]:
        ...

    @abstractmethod
    def get_used_ports(self, exclude: Optional[PortLease] = None) -> Set[int]:
        """All leased external ports, optionally ignoring one lease's key."""

    @abstractmethod
    def add_lease(self, lease: PortLease) -> None:
        ...

    @abstractmethod
    def update_lease_port(self, lease: PortLease, external_port: int) -> None:
        """Re-point an existing lease to another external port."""

    @abstractmethod
    def release_leases(self, project_id: str, mr_id: str) -> int:
        """Delete every lease of a merge request, returning how many were removed."""

    @abstractmethod
    def get_ports_for(self, project_id: str, mr_id: str) -> Dict[str, int]:
        ...

    # Stacks

    @abstractmethod
    def save_stack(self, record: StackRecord) -> None:
        ...

    @abstractmethod
    def get_stack(self, project_id: str, mr_id: str) -> Optional[StackRecord]:
        ...

    @abstractmethod
    def list_stacks(self) -> List[StackRecord]:
        ...

    @abstractmethod
    def update_stack_status(self, project_id: str, mr_id: str, status: StackStatus) -> bool:
        """Set a stack's status; returns False when no record exists."""

    @abstractmethod
    def remove_stack(self, project_id: str, mr_id: str) -> None:
        ...


def _lease_key(lease: PortLease) -> Tuple[str, str, str, str]:
    return (lease.project_id, lease.mr_id, lease.service, lease.slot_name)


class InMemoryStore(Store):
    """Thread safe, process local Store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._merge_requests: Dict[Tuple[str, str], dict] = {}
        self._leases: Dict[Tuple[str, str, str, str], PortLease] = {}
        self._stacks: Dict[Tuple[str, str], StackRecord] = {}

    def update_merge_request(self, event: CanonicalEvent, state: MergeRequestState) -> None:
        with self._lock:
            row = self._merge_requests.setdefault(event.key, {"comment_id": None})
            row.update(
                project_name=event.project_name,
                merge_request_name=event.title,
                repo=event.full_name,
                status=state,
                commit_sha=event.commit_sha,
                updated_at=datetime.now(),
            )
        logger.debug(f"Merge request {event.project_id}/{event.mr_id} is now {state.value}")

    def get_merge_request_state(self, project_id: str, mr_id: str) -> Optional[MergeRequestState]:
        with self._lock:
            row = self._merge_requests.get((project_id, mr_id))
            return row["status"] if row else None

    def get_last_commit_sha(self, project_id: str, mr_id: str) -> Optional[str]:
        with self._lock:
            row = self._merge_requests.get((project_id, mr_id))
            return row.get("commit_sha") if row else None

    def get_comment_id(self, project_id: str, mr_id: str) -> Optional[str]:
        with self._lock:
            row = self._merge_requests.get((project_id, mr_id))
            return row.get("comment_id") if row else None

    def set_comment_id(self, project_id: str, mr_id: str, comment_id: str) -> None:
        with self._lock:
            row = self._merge_requests.setdefault((project_id, mr_id), {})
            row["comment_id"] = str(comment_id)

    def get_lease(
        self, project_id: str, mr_id: str, service: str, slot_name: str
    ) -> Optional[PortLease]:
        with self._lock:
            lease = self._leases.get((project_id, mr_id, service, slot_name))
            return copy.copy(lease) if lease else None

    def get_used_ports(self, exclude: Optional[PortLease] = None) -> Set[int]:
        excluded_key = _lease_key(exclude) if exclude else None
        with self._lock:
            return {
                lease.external_port
                for key, lease in self._leases.items()
                if key != excluded_key
            }

    def add_lease(self, lease: PortLease) -> None:
        with self._lock:
            key = _lease_key(lease)
            if key in self._leases:
                raise StoreError(f"Lease already exists for {key}")
            if any(existing.external_port == lease.external_port for existing in self._leases.values()):
                raise StoreError(f"Port {lease.external_port} is already leased")
            self._leases[key] = copy.copy(lease)

    def update_lease_port(self, lease: PortLease, external_port: int) -> None:
        with self._lock:
            key = _lease_key(lease)
            if key not in self._leases:
                raise StoreError(f"No lease to update for {key}")
            self._leases[key].external_port = external_port
        lease.external_port = external_port

    def release_leases(self, project_id: str, mr_id: str) -> int:
        with self._lock:
            keys = [key for key in self._leases if key[:2] == (project_id, mr_id)]
            for key in keys:
                del self._leases[key]
            return len(keys)

    def get_ports_for(self, project_id: str, mr_id: str) -> Dict[str, int]:
        with self._lock:
            return {
                lease.slot_name: lease.external_port
                for lease in self._leases.values()
                if (lease.project_id, lease.mr_id) == (project_id, mr_id)
            }

    def save_stack(self, record: StackRecord) -> None:
        with self._lock:
            existing = self._stacks.get(record.key)
            if existing:
                record.created_at = existing.created_at
            record.updated_at = datetime.now()
            self._stacks[record.key] = copy.deepcopy(record)

    def get_stack(self, project_id: str, mr_id: str) -> Optional[StackRecord]:
        with self._lock:
            record = self._stacks.get((project_id, mr_id))
            return copy.deepcopy(record) if record else None

    def list_stacks(self) -> List[StackRecord]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._stacks.values()]

    def update_stack_status(self, project_id: str, mr_id: str, status: StackStatus) -> bool:
        with self._lock:
            record = self._stacks.get((project_id, mr_id))
            if record is None:
                return False
            record.status = status
            record.updated_at = datetime.now()
            return True

    def remove_stack(self, project_id: str, mr_id: str) -> None:
        with self._lock:
            self._stacks.pop((project_id, mr_id), None)
