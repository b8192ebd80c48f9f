"""
Data models for Instantiate

Canonical merge request events, webhook parse outcomes, port leases and stack
records shared by the normalizer, the lifecycle manager and the stores.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union


class Provider(Enum):
    """Source control providers webhooks are accepted from."""

    GITHUB = "github"
    GITLAB = "gitlab"


class MergeRequestStatus(Enum):
    """State of a merge request as seen by the webhook normalizer."""

    OPEN = "open"
    CLOSED = "closed"


class MergeRequestState(Enum):
    """Lifecycle state persisted for a merge request."""

    IN_PROGRESS = "in_progress"
    OPEN = "open"
    ERROR = "error"
    CLOSED = "closed"


class StackStatus(Enum):
    """Runtime status of a deployed stack."""

    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class DeploymentStatus(Enum):
    """Status reported to reviewers through merge request comments."""

    IN_PROGRESS = "in_progress"
    READY = "ready"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class CanonicalEvent:
    """Provider independent view of one merge request state change."""

    project_id: str
    mr_id: str
    mr_display_id: str
    project_name: str
    title: str
    branch: str
    commit_sha: str
    author: str
    clone_url: str
    full_name: str
    provider: Provider
    status: MergeRequestStatus

    @property
    def key(self) -> tuple:
        return (self.project_id, self.mr_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["provider"] = self.provider.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalEvent":
        values = dict(data)
        values["provider"] = Provider(values["provider"])
        values["status"] = MergeRequestStatus(values["status"])
        for name in ("project_id", "mr_id", "mr_display_id"):
            values[name] = str(values[name])
        return cls(**values)


@dataclass(frozen=True)
class Handled:
    """The webhook maps to a merge request event that must be processed."""

    event: CanonicalEvent
    force_deploy: bool = False


@dataclass(frozen=True)
class Skipped:
    """The webhook is ignored; reason is a machine readable code."""

    reason: str


ParseOutcome = Union[Handled, Skipped]


@dataclass
class PortLease:
    """One external port bound to a service slot of a stack."""

    project_id: str
    mr_id: str
    service: str
    slot_name: str
    external_port: int
    internal_port: Optional[int] = None


@dataclass
class StackRecord:
    """Persisted description of a deployed stack."""

    project_id: str
    mr_id: str
    project_name: str
    mr_name: str
    provider: Provider
    ports: Dict[str, int] = field(default_factory=dict)
    links: Dict[str, str] = field(default_factory=dict)
    status: StackStatus = StackStatus.RUNNING
    orchestrator: str = "compose"
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> tuple:
        return (self.project_id, self.mr_id)

    def get_summary(self) -> str:
        """One line summary used by the CLI listing."""
        links = ", ".join(f"{name}={url}" for name, url in sorted(self.links.items()))
        return (
            f"{self.project_name}/{self.mr_name} [{self.orchestrator}] "
            f"{self.status.value}{' - ' + links if links else ''}"
        )
