"""Beads issue tracker client (wraps the ``bd`` CLI).

Also owns the label conventions the orchestrator reads and writes:
- ``<prefix>-managed``: set once when the orchestrator first touches an issue
- ``<prefix>-phase:<name>``: current phase, engine-owned
- ``<prefix>-hitl:<reason>``: blocked for a human, engine-owned
- ``<prefix>-excluded``: skip this issue, user-owned
- ``<prefix>-workflow:<name>``: explicit policy override, user-owned
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

from ..core.issue import Issue, IssueStatus

logger = logging.getLogger(__name__)


class BeadsError(RuntimeError):
    """Raised when a ``bd`` command exits non-zero or returns bad JSON."""


@dataclass(frozen=True)
class IssueLabels:
    """Label names derived from a configurable prefix."""
    prefix: str = "ashep"

    @property
    def managed(self) -> str:
        return f"{self.prefix}-managed"

    @property
    def excluded(self) -> str:
        return f"{self.prefix}-excluded"

    @property
    def phase_prefix(self) -> str:
        return f"{self.prefix}-phase:"

    @property
    def hitl_prefix(self) -> str:
        return f"{self.prefix}-hitl:"

    def phase(self, name: str) -> str:
        return f"{self.phase_prefix}{name}"

    def hitl(self, reason: str) -> str:
        return f"{self.hitl_prefix}{reason}"

    def current_phase(self, issue: Issue) -> Optional[str]:
        for label in issue.labels:
            if label.startswith(self.phase_prefix):
                return label[len(self.phase_prefix):]
        return None

    def phase_labels(self, issue: Issue) -> List[str]:
        return issue.labels_with_prefix(self.phase_prefix)

    def hitl_labels(self, issue: Issue) -> List[str]:
        return issue.labels_with_prefix(self.hitl_prefix)

    def is_excluded(self, issue: Issue) -> bool:
        return issue.has_label(self.excluded)


class BeadsClient:
    """Async wrapper around the ``bd`` command line tool."""

    def __init__(self, executable: str = "bd", cwd: Optional[Path] = None):
        self.executable = executable
        self.cwd = cwd

    async def _run(self, *args: str) -> str:
        cmd = [self.executable, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
            )
        except OSError as e:
            raise BeadsError(f"Failed to run {self.executable}: {e}") from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise BeadsError(
                f"Beads command failed ({' '.join(args)}): "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")

    async def _run_json(self, *args: str) -> Any:
        output = await self._run(*args)
        if not output.strip():
            return []
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise BeadsError(f"Invalid JSON from bd {args[0]}: {e}") from e

    @staticmethod
    def _to_issues(data: Any) -> List[Issue]:
        if not isinstance(data, list):
            return []
        return [Issue.model_validate(item) for item in data]

    async def ready_issues(self) -> List[Issue]:
        """Issues with no open blockers."""
        return self._to_issues(await self._run_json("ready", "--json"))

    async def list_issues(
        self,
        status: Optional[str] = None,
        priority: Optional[int] = None,
        assignee: Optional[str] = None,
    ) -> List[Issue]:
        args = ["list", "--json"]
        if status:
            args += ["--status", status]
        if priority is not None:
            args += ["--priority", str(priority)]
        if assignee:
            args += ["--assignee", assignee]
        return self._to_issues(await self._run_json(*args))

    async def get_issue(self, issue_id: str) -> Optional[Issue]:
        try:
            data = await self._run_json("show", issue_id, "--json")
        except BeadsError as e:
            logger.warning(f"Could not load issue {issue_id}: {e}")
            return None
        # bd show returns a one-element list
        if isinstance(data, list):
            data = data[0] if data else None
        return Issue.model_validate(data) if data else None

    async def update_issue(
        self,
        issue_id: str,
        status: Optional[IssueStatus] = None,
        priority: Optional[int] = None,
        assignee: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> None:
        args = ["update", issue_id]
        if status:
            args += ["--status", IssueStatus(status).value]
        if priority is not None:
            args += ["--priority", str(priority)]
        if assignee:
            args += ["--assignee", assignee]
        if notes:
            args += ["--notes", notes]
        await self._run(*args)

    async def close_issue(self, issue_id: str, reason: Optional[str] = None) -> None:
        args = ["close", issue_id]
        if reason:
            args += ["--reason", reason]
        await self._run(*args)

    async def get_labels(self, issue_id: str) -> List[str]:
        issue = await self.get_issue(issue_id)
        return list(issue.labels) if issue else []

    async def add_label(self, issue_id: str, label: str) -> None:
        await self._run("label", "add", issue_id, label)

    async def remove_label(self, issue_id: str, label: str) -> None:
        await self._run("label", "remove", issue_id, label)

    async def update_labels(
        self,
        issue_id: str,
        add: Optional[List[str]] = None,
        remove: Optional[List[str]] = None,
    ) -> None:
        """Remove then add labels; a label in both lists ends up present."""
        for label in remove or []:
            await self.remove_label(issue_id, label)
        for label in add or []:
            await self.add_label(issue_id, label)
