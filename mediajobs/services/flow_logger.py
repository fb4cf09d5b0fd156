"""JSONL flow logging for job tracing.

Every job run produces a step-by-step trace in JSONL format. Structured
logs from many jobs interleave; a flow log is one job's narrative.

Format:
    {"ts": "...", "flow_id": "3f2a...", "step": 0, "action": "start", "status": "pending"}
    {"ts": "...", "flow_id": "3f2a...", "step": 1, "action": "stage_start", "status": "running", "stage": "swap"}
    {"ts": "...", "flow_id": "3f2a...", "step": 2, "action": "fallback", "status": "degraded", "from": "wan_replace", "to": "kling_motion"}
    {"ts": "...", "flow_id": "3f2a...", "step": 3, "action": "end", "status": "completed"}

Debugging: cat flow_logs/job-3f2a....jsonl | jq .

Usage:
    with JobFlowLogger(job_id, job_type="media_transform") as flow:
        flow.log_stage_start("swap", 10, 85)
        flow.log_fallback("swap", "wan_replace", "kling_motion", "timeout")
"""

from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Any, Dict
import orjson
import structlog

from mediajobs.config import settings

logger = structlog.get_logger()


class FlowLogger:
    """
    JSONL flow logger for operation tracing.

    Attributes:
        flow_type: Type of flow (e.g., "job")
        flow_id: Unique identifier for this flow
        output_dir: Directory for flow log files
    """

    MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10 MB before rotation

    def __init__(
        self,
        flow_type: str,
        flow_id: str,
        output_dir: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.flow_type = flow_type
        self.flow_id = str(flow_id)
        self.step = 0
        self._file = None
        self._closed = False
        self._default_context = context or {}

        self.output_dir = Path(output_dir or settings.flow_log_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.output_dir / f"{flow_type}-{self.flow_id}.jsonl"

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.log_error(exc_val)
            self.end("failed")
        else:
            self.end()
        return False

    def start(self) -> "FlowLogger":
        self._open_file()
        self.log_step("start", "pending")
        return self

    def end(self, status: str = "completed"):
        self.log_step("end", status)
        self._close_file()

    def _open_file(self):
        if self._file is not None:
            return
        if self.log_file.exists() and self.log_file.stat().st_size > self.MAX_FILE_SIZE_BYTES:
            self._rotate_file()
        self._file = open(self.log_file, "ab")

    def _close_file(self):
        if self._file is not None:
            self._file.flush()
            self._file.close()
            self._file = None
            self._closed = True

    def _rotate_file(self):
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        rotated = self.log_file.with_suffix(f".{timestamp}.jsonl")
        self.log_file.rename(rotated)
        logger.info("Rotated flow log", old=str(self.log_file), new=str(rotated))

    def _entry(self, action: str, status: str, **context) -> dict:
        return {
            "ts": datetime.now(timezone.utc).isoformat(),
            "flow_type": self.flow_type,
            "flow_id": self.flow_id,
            "step": self.step,
            "action": action,
            "status": status,
            **self._default_context,
            **context,
        }

    def _write_entry(self, entry: dict):
        if self._closed:
            logger.warning("Attempting to write to closed flow log", flow_id=self.flow_id)
            return
        self._open_file()
        try:
            self._file.write(orjson.dumps(entry, default=str) + b"\n")
            self._file.flush()
        except (OSError, TypeError) as e:
            logger.error("Failed to write flow log entry", flow_id=self.flow_id, error=str(e))

    def log_step(self, action: str, status: str, **context):
        """Log a step and advance the step counter."""
        self._write_entry(self._entry(action, status, **context))
        self.step += 1

    def log_error(self, error: BaseException, **context):
        self.log_step(
            "error",
            "failed",
            error_type=type(error).__name__,
            error_message=str(error),
            **context,
        )

    def log_progress(self, progress_pct: float, message: Optional[str] = None):
        """Progress entries do not advance the step counter."""
        entry = self._entry("progress", "running", progress_pct=round(progress_pct, 2))
        if message:
            entry["message"] = message
        self._write_entry(entry)

    def log_retry(self, attempt: int, delay_seconds: float, error: Optional[str] = None, **context):
        self.log_step(
            "retry",
            "retrying",
            attempt=attempt,
            delay_seconds=round(delay_seconds, 2),
            error=error,
            **context,
        )

    def __del__(self):
        self._close_file()


class JobFlowLogger(FlowLogger):
    """Flow logger for one pipeline run."""

    def __init__(self, job_id: str, job_type: Optional[str] = None, output_dir: Optional[str] = None, **context):
        if job_type:
            context["job_type"] = job_type
        super().__init__("job", job_id, output_dir=output_dir, context=context)

    def log_stage_start(self, stage: str, lo_pct: float, hi_pct: float):
        self.log_step("stage_start", "running", stage=stage, lo_pct=lo_pct, hi_pct=hi_pct)

    def log_stage_complete(self, stage: str, strategy: Optional[str] = None):
        self.log_step("stage_complete", "completed", stage=stage, strategy=strategy)

    def log_fallback(self, stage: str, from_strategy: str, to_strategy: Optional[str], reason: str):
        self.log_step("fallback", "degraded", stage=stage, reason=reason, **{"from": from_strategy, "to": to_strategy})

    def log_complete(self, cost_cents: int, **context):
        self.log_step("complete", "success", cost_cents=cost_cents, **context)


def read_flow_log(flow_type: str, flow_id: str, output_dir: Optional[str] = None) -> list:
    """
    Read and parse a flow log file.

    Returns:
        List of log entries as dictionaries
    """
    log_file = Path(output_dir or settings.flow_log_dir) / f"{flow_type}-{flow_id}.jsonl"
    if not log_file.exists():
        return []

    entries = []
    with open(log_file, "rb") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    entries.append(orjson.loads(line))
                except orjson.JSONDecodeError:
                    logger.warning("Skipping malformed flow log line", flow_id=flow_id)
    return entries
