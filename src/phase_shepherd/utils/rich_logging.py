"""Worker logging with issue/phase context and colored console output."""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

LEVEL_COLORS = {
    "DEBUG": "\033[36m",      # Cyan
    "INFO": "\033[32m",       # Green
    "WARNING": "\033[33m",    # Yellow
    "ERROR": "\033[31m",      # Red
    "CRITICAL": "\033[35m",   # Magenta
}
RESET = "\033[0m"

TRANSITION_EMOJI = {
    "advance": "⏩",
    "retry": "🔁",
    "block": "⛔",
    "close": "✅",
    "jump_back": "↩️",
}


class ShepherdLogFormatter(logging.Formatter):
    """Formats ``HH:MM:SS LEVEL [worker] [phase] [issue] message``."""

    def __init__(self, worker_id: str, use_colors: bool = True):
        super().__init__()
        self.worker_id = worker_id
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        phase_context = f"[{record.phase}] " if hasattr(record, "phase") else ""
        issue_context = f"[{record.issue_id}] " if hasattr(record, "issue_id") else ""

        if self.use_colors:
            level_color = LEVEL_COLORS.get(record.levelname, "")
            reset = RESET
        else:
            level_color = ""
            reset = ""

        return (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.worker_id}] {phase_context}{issue_context}{record.getMessage()}"
        )


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that stamps the current issue and phase on every record."""

    def __init__(self, logger: logging.Logger, worker_id: str):
        super().__init__(logger, {})
        self.worker_id = worker_id
        self.current_issue_id: Optional[str] = None
        self.current_phase: Optional[str] = None

    def set_issue_context(self, issue_id: Optional[str] = None, phase: Optional[str] = None):
        if issue_id:
            self.current_issue_id = issue_id
        if phase is not None:
            self.current_phase = phase

    def clear_context(self):
        self.current_issue_id = None
        self.current_phase = None

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        if self.current_issue_id:
            extra["issue_id"] = self.current_issue_id
        if self.current_phase:
            extra["phase"] = self.current_phase
        kwargs["extra"] = extra
        return msg, kwargs

    def issue_started(self, issue_id: str, title: str, policy: str):
        self.set_issue_context(issue_id=issue_id)
        self.info(f"📋 Processing: {title} (policy: {policy})")

    def phase_change(self, phase: str):
        self.set_issue_context(phase=phase)
        self.info(f"▶️ Phase: {phase}")

    def transition_applied(self, transition_type: str, reason: str, target: Optional[str] = None):
        emoji = TRANSITION_EMOJI.get(transition_type, "•")
        suffix = f" → {target}" if target else ""
        self.info(f"{emoji} {transition_type}{suffix}: {reason}")
        self.clear_context()

    def issue_failed(self, error: str):
        self.error(f"❌ {error}")
        self.clear_context()

    def token_usage(self, tokens: int, cost: Optional[float]):
        msg = f"💰 Tokens: {tokens:,}"
        if cost is not None:
            msg += f" (~${cost:.4f})"
        self.info(msg)


def setup_rich_logging(
    worker_id: str,
    workspace: Path,
    log_level: str = "INFO",
    use_file: bool = True,
    use_json: bool = False,
) -> ContextLogger:
    """
    Setup worker logging.

    Args:
        worker_id: Worker identifier shown on every line
        workspace: Workspace path; file logs go to <workspace>/logs/<worker_id>.log
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_file: Write to log file
        use_json: Use JSON structured logging on the console

    Returns:
        ContextLogger instance
    """
    # PID keeps loggers distinct when several workers share an interpreter
    logger = logging.getLogger(f"{worker_id}-{os.getpid()}")
    logger.setLevel(getattr(logging, log_level.upper()))

    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if use_json:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","worker":"%(worker)s","level":"%(levelname)s",'
            '"message":"%(message)s","module":"%(module)s","function":"%(funcName)s"}',
            defaults={"worker": worker_id},
        )
    else:
        formatter = ShepherdLogFormatter(worker_id, use_colors=sys.stdout.isatty())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if use_file:
        log_dir = workspace / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{worker_id}.log")
        file_handler.setFormatter(ShepherdLogFormatter(worker_id, use_colors=False))
        logger.addHandler(file_handler)

    return ContextLogger(logger, worker_id)
