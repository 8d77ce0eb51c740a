"""Agent backend using the OpenCode CLI (``opencode run --format json``)."""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.run import Artifact, ErrorDetails, Outcome, RunMetrics, ToolCall
from .base import AgentBackend, AgentLaunchError, AgentRequest, AgentResult

logger = logging.getLogger(__name__)

DEFAULT_RUN_TITLE = "Phase Shepherd Run"

# Longest stretch of assistant text kept as the outcome message
MAX_MESSAGE_CHARS = 2000


def _get(obj: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path through nested dicts, returning ``default`` on any miss."""
    for key in path.split("."):
        if isinstance(obj, dict) and key in obj:
            obj = obj[key]
        else:
            return default
    return obj


class _RunParser:
    """Accumulates OpenCode events into an outcome."""

    def __init__(self):
        self.success = True
        self.session_id: Optional[str] = None
        self.error: Optional[str] = None
        self.error_details: Optional[ErrorDetails] = None
        self.warnings: List[str] = []
        self.tool_calls: List[ToolCall] = []
        self.artifacts: List[Artifact] = []
        self.metrics: Dict[str, Any] = {}
        # Text parts are re-sent as they grow; keep the latest version per part id
        self.text_parts: Dict[str, str] = {}

    def feed_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return
        if isinstance(event, dict):
            self.process_event(event)

    def process_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        payload = event.get("payload") or event.get("properties") or {}

        if event_type in ("session.created", "session.updated"):
            session_id = _get(payload, "info.id")
            if session_id:
                self.session_id = session_id

        elif event_type == "session.status":
            if _get(payload, "status.type") == "retry":
                self.warnings.append(
                    f"Session retry: {_get(payload, 'status.message', '')} "
                    f"(attempt {_get(payload, 'status.attempt', 0)})"
                )

        elif event_type == "session.error":
            self.success = False
            self.error = _get(payload, "error.message", "Session error occurred")
            if _get(payload, "error"):
                self.error_details = ErrorDetails(
                    type=_get(payload, "error.name", "SessionError"),
                    message=_get(payload, "error.message"),
                    stack_trace=_get(payload, "error.stack"),
                )

        elif event_type == "message.updated":
            if _get(payload, "info.role") == "assistant":
                self._process_assistant_message(payload["info"])

        elif event_type == "message.part.updated":
            self._process_part(_get(payload, "part", {}))

        elif event_type == "file.edited":
            file_path = _get(payload, "diff.file") or _get(payload, "file")
            if file_path:
                self.artifacts.append(Artifact(
                    path=file_path,
                    operation="modified",
                    size=_get(payload, "diff.size"),
                ))

        elif event_type == "permission.updated":
            self.warnings.append(f"Permission required: {_get(payload, 'title', '')}")

        elif event_type == "command.executed":
            start = _get(payload, "time.start")
            end = _get(payload, "time.end")
            self.tool_calls.append(ToolCall(
                name="bash",
                inputs={"command": _get(payload, "command", "")},
                outputs=_get(payload, "stdout"),
                status="completed" if _get(payload, "exitCode", 0) == 0 else "error",
                duration_ms=end - start if start is not None and end is not None else None,
            ))

        else:
            logger.debug(f"Ignoring OpenCode event type: {event_type}")

    def _process_assistant_message(self, msg: Dict[str, Any]) -> None:
        if _get(msg, "time.created"):
            self.metrics["start_time_ms"] = _get(msg, "time.created")
        if _get(msg, "time.completed"):
            self.metrics["end_time_ms"] = _get(msg, "time.completed")
        if _get(msg, "tokens"):
            self.metrics["tokens_used"] = (
                (_get(msg, "tokens.input", 0) or 0) + (_get(msg, "tokens.output", 0) or 0)
            )
        if _get(msg, "cost"):
            self.metrics["cost"] = _get(msg, "cost")
        provider_id = _get(msg, "providerID")
        model_id = _get(msg, "modelID")
        if provider_id and model_id:
            self.metrics["model_name"] = f"{provider_id}/{model_id}"
        if _get(msg, "error"):
            self.success = False
            self.error = _get(msg, "error.data.message", "Message error occurred")
            self.error_details = ErrorDetails(
                type=_get(msg, "error.name", "MessageError"),
                message=_get(msg, "error.data.message"),
                stack_trace=_get(msg, "error.data.stack"),
                file_path=_get(msg, "error.data.file_path"),
                line_number=_get(msg, "error.data.line_number"),
            )

    def _process_part(self, part: Dict[str, Any]) -> None:
        part_type = part.get("type")
        if part_type == "text":
            part_id = part.get("id") or str(len(self.text_parts))
            self.text_parts[part_id] = part.get("text", "")
        elif part_type == "tool":
            status = _get(part, "state.status", "completed")
            if status not in ("completed", "error", "cancelled"):
                # pending/running updates are superseded by the final one
                return
            start = _get(part, "state.time.start")
            end = _get(part, "state.time.end", start)
            self.tool_calls.append(ToolCall(
                name=part.get("tool", ""),
                inputs=_get(part, "state.input"),
                outputs=_get(part, "state.output") if status == "completed" else None,
                status=status,
                duration_ms=end - start if start is not None and end is not None else None,
            ))

    @property
    def content(self) -> str:
        return "\n".join(text for text in self.text_parts.values() if text)

    def build_outcome(self) -> Outcome:
        metrics = RunMetrics(**self.metrics)
        if metrics.start_time_ms and metrics.end_time_ms:
            metrics.duration_ms = metrics.end_time_ms - metrics.start_time_ms
        if self.tool_calls:
            metrics.api_calls_count = len(self.tool_calls)

        error = self.error
        if not self.success and not error:
            error = "Agent execution failed"

        content = self.content
        if self.success:
            message = content[-MAX_MESSAGE_CHARS:] if content else "Agent completed successfully"
        else:
            message = error

        return Outcome(
            success=self.success,
            message=message,
            artifacts=self.artifacts,
            error=error,
            error_details=self.error_details,
            warnings=self.warnings,
            tool_calls=self.tool_calls,
            metrics=metrics,
        )


def parse_run_output(stdout: str, stderr: str = "") -> AgentResult:
    """Parse OpenCode's line-delimited JSON events from both streams."""
    parser = _RunParser()
    for line in stdout.splitlines():
        parser.feed_line(line)
    for line in stderr.splitlines():
        parser.feed_line(line)
    return AgentResult(
        outcome=parser.build_outcome(),
        content=parser.content,
        session_id=parser.session_id,
        stderr=stderr,
    )


class OpenCodeBackend(AgentBackend):
    """
    Runs agents through ``opencode run``.

    Spawns: opencode run --agent A --format json --title T [--model M] [--session S] MESSAGE
    """

    def __init__(
        self,
        executable: str = "opencode",
        working_dir: Optional[str] = None,
        default_model: Optional[str] = None,
        logs_dir: Optional[Path] = None,
    ):
        self.executable = executable
        self.working_dir = working_dir
        self.default_model = default_model
        self.logs_dir = logs_dir

    def build_command(self, request: AgentRequest) -> List[str]:
        cmd = [
            self.executable, "run",
            "--agent", request.agent_id or "default",
            "--format", "json",
            "--title", request.title or DEFAULT_RUN_TITLE,
        ]
        model = request.model or self.default_model
        if model:
            cmd.extend(["--model", model])
        if request.session_id:
            cmd.extend(["--session", request.session_id])
        cmd.append(request.instructions)
        return cmd

    async def run_agent(self, request: AgentRequest) -> AgentResult:
        cmd = self.build_command(request)
        logger.info(
            f"Running opencode agent={request.agent_id} model={request.model or self.default_model} "
            f"session={request.session_id or 'new'}"
        )
        start_time = time.time()

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=request.working_dir or self.working_dir,
            )
        except OSError as e:
            raise AgentLaunchError(f"Failed to start {self.executable}: {e}") from e

        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            # Cancelled by a caller-side timeout; do not leave the agent running
            process.kill()
            await process.wait()
            raise

        stdout = stdout_bytes.decode(errors="replace")
        stderr = stderr_bytes.decode(errors="replace")
        self._write_log(request, stdout, stderr)

        result = parse_run_output(stdout, stderr)
        result.exit_code = process.returncode

        if process.returncode != 0 and result.outcome.success:
            error = stderr.strip() or f"Process exited with code {process.returncode}"
            result.outcome = result.outcome.model_copy(update={
                "success": False,
                "error": error,
                "message": error,
            })

        if result.outcome.metrics.duration_ms is None:
            result.outcome.metrics.duration_ms = int((time.time() - start_time) * 1000)

        logger.debug(
            f"opencode exited rc={process.returncode} success={result.outcome.success} "
            f"tools={len(result.outcome.tool_calls)} session={result.session_id}"
        )
        return result

    def _write_log(self, request: AgentRequest, stdout: str, stderr: str) -> None:
        if not self.logs_dir:
            return
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.logs_dir / f"opencode-{request.agent_id}-{int(time.time())}.log"
        try:
            with open(log_path, "w") as f:
                f.write(f"=== OpenCode run: {request.title or DEFAULT_RUN_TITLE} ===\n")
                f.write(stdout)
                if stderr:
                    f.write(f"\n{'=' * 50}\nSTDERR:\n{stderr}")
        except OSError as e:
            logger.debug(f"Failed to write opencode log {log_path}: {e}")
