"""Issue model mirroring the tracker's JSON output."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class IssueStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    CLOSED = "closed"


class Issue(BaseModel):
    """A work item owned by the external tracker.

    The orchestrator only reads issues and mutates them through the tracker
    client; it never persists them itself.
    """

    model_config = ConfigDict(use_enum_values=True, extra="ignore")

    id: str
    title: str = ""
    description: str = ""
    issue_type: str = "task"
    priority: int = 2
    status: IssueStatus = IssueStatus.OPEN
    labels: List[str] = Field(default_factory=list)
    assignee: Optional[str] = None

    def has_label(self, label: str) -> bool:
        return label in self.labels

    def labels_with_prefix(self, prefix: str) -> List[str]:
        return [label for label in self.labels if label.startswith(prefix)]
