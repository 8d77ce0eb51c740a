"""Append-only run and decision log.

Writes two JSONL files under the data directory:
- runs.jsonl: one full RunRecord snapshot per create/update; the last
  snapshot for an id wins when the file is replayed
- decisions.jsonl: one DecisionRecord per line

The log is single-writer per process. Records are replayed into memory on
startup so retry counts and session lookups survive restarts.
"""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .run import DecisionRecord, DecisionType, RunRecord, RunStatus

logger = logging.getLogger(__name__)

RUNS_FILE = "runs.jsonl"
DECISIONS_FILE = "decisions.jsonl"


class RunLog:
    """Durable record of runs and the decisions made around them."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._runs_path = self.data_dir / RUNS_FILE
        self._decisions_path = self.data_dir / DECISIONS_FILE
        self._runs: Dict[str, RunRecord] = {}
        self._decisions: List[DecisionRecord] = []
        self._replay()

    def _replay(self) -> None:
        for line in self._read_lines(self._runs_path):
            try:
                run = RunRecord.model_validate(line)
            except ValidationError as e:
                logger.warning(f"Skipping malformed run record: {e}")
                continue
            self._runs[run.id] = run

        for line in self._read_lines(self._decisions_path):
            try:
                self._decisions.append(DecisionRecord.model_validate(line))
            except ValidationError as e:
                logger.warning(f"Skipping malformed decision record: {e}")

        if self._runs or self._decisions:
            logger.debug(
                f"Replayed {len(self._runs)} runs and {len(self._decisions)} decisions "
                f"from {self.data_dir}"
            )

    @staticmethod
    def _read_lines(path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        entries = []
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    # A torn final line after a crash is expected
                    logger.warning(f"Skipping unparseable line in {path.name}")
        return entries

    def _append(self, path: Path, payload: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(payload, default=str) + "\n")

    # --- runs ---

    def create_run(self, run: RunRecord) -> RunRecord:
        if run.id in self._runs:
            raise ValueError(f"Run {run.id} already exists")
        self._runs[run.id] = run
        self._append(self._runs_path, run.model_dump(mode="json"))
        return run

    def update_run(self, run_id: str, **changes: Any) -> RunRecord:
        """Apply ``changes`` to a run. Terminal runs are immutable."""
        current = self._runs.get(run_id)
        if current is None:
            raise KeyError(f"Run {run_id} not found")
        if current.is_terminal:
            raise ValueError(f"Run {run_id} is already {current.status}")

        now = datetime.now(UTC)
        changes.setdefault("updated_at", now)
        status = changes.get("status")
        if status is not None and RunStatus(status).is_terminal:
            changes.setdefault("completed_at", now)

        metadata = changes.pop("metadata", None)
        updated = current.model_copy(update=changes)
        if metadata:
            updated.metadata = {**current.metadata, **metadata}

        self._runs[run_id] = updated
        self._append(self._runs_path, updated.model_dump(mode="json"))
        return updated

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def query_runs(
        self,
        issue_id: Optional[str] = None,
        phase: Optional[str] = None,
        status: Optional[str] = None,
        agent_id: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[RunRecord]:
        """Matching runs, newest first."""
        runs = [
            run for run in self._runs.values()
            if (issue_id is None or run.issue_id == issue_id)
            and (phase is None or run.phase == phase)
            and (status is None or run.status == status)
            and (agent_id is None or run.agent_id == agent_id)
            and (session_id is None or run.session_id == session_id)
        ]
        # Reverse first so equal timestamps still come out newest first
        runs.reverse()
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit] if limit is not None else runs

    def get_phase_retry_count(self, issue_id: str, phase: str) -> int:
        """Prior attempts of ``phase`` that failed or were sent back for a retry."""
        return sum(
            1 for run in self.query_runs(issue_id=issue_id, phase=phase)
            if run.status == RunStatus.FAILED.value or run.metadata.get("transition") == "retry"
        )

    def get_phase_visit_count(self, issue_id: str, phase: str) -> int:
        return len(self.query_runs(issue_id=issue_id, phase=phase))

    def get_phase_total_duration(self, issue_id: str, phase: str) -> int:
        return sum(run.duration_ms or 0 for run in self.query_runs(issue_id=issue_id, phase=phase))

    def get_runs_by_session(self, session_id: str) -> List[RunRecord]:
        return self.query_runs(session_id=session_id)

    def get_duration_stats(self, **query: Any) -> Dict[str, Any]:
        durations = [
            run.duration_ms for run in self.query_runs(**query)
            if run.duration_ms is not None
        ]
        if not durations:
            return {"count": 0, "total_ms": 0, "average_ms": 0, "min_ms": None, "max_ms": None}
        return {
            "count": len(durations),
            "total_ms": sum(durations),
            "average_ms": sum(durations) // len(durations),
            "min_ms": min(durations),
            "max_ms": max(durations),
        }

    # --- decisions ---

    def log_decision(
        self,
        run_id: str,
        type: DecisionType,
        decision: str,
        reasoning: Optional[str] = None,
        **metadata: Any,
    ) -> DecisionRecord:
        record = DecisionRecord(
            run_id=run_id,
            type=type,
            decision=decision,
            reasoning=reasoning,
            metadata=metadata,
        )
        self._decisions.append(record)
        self._append(self._decisions_path, record.model_dump(mode="json"))
        return record

    def get_decisions(self, run_id: str) -> List[DecisionRecord]:
        return [d for d in self._decisions if d.run_id == run_id]

    def recent_decisions(
        self, issue_id: str, type: Optional[DecisionType] = None, limit: int = 5
    ) -> List[DecisionRecord]:
        """Most recent decisions recorded against any run of ``issue_id``."""
        run_ids = {run.id for run in self.query_runs(issue_id=issue_id)}
        matching = [
            d for d in self._decisions
            if d.run_id in run_ids and (type is None or d.type == type)
        ]
        return matching[-limit:][::-1]
