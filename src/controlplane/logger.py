"""
Logging setup and structured stage events.

Diagnostic logs go through module loggers under ``controlplane``.
Stage lifecycle events are additionally written as one JSON object per
line on the ``controlplane.stages`` logger, so pipeline log collectors can
filter on environment, region and stage.

Logged events:
- stage.started
- stage.completed
- stage.skipped
- stage.failed

Usage:
    from controlplane.logger import StageLogger

    events = StageLogger(environment="DEV", region_code="WEEU")
    events.log_stage_started(step=0, stage="bootstrap-deployer")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

__all__ = ["configure_logging", "StageLogger"]

_stage_logger = logging.getLogger("controlplane.stages")
_stage_logger.setLevel(logging.INFO)
_stage_logger.propagate = False

# Default handler outputs JSON to stderr, keeping stdout for tool output
if not _stage_logger.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _stage_logger.addHandler(_handler)

TEXT_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(level: str = "info", fmt: str = "text") -> None:
    """Install a stderr handler on the ``controlplane`` logger."""
    root = logging.getLogger("controlplane")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)


class StageLogger:
    """
    Structured logger for stage lifecycle events.

    Each entry carries the identity labels, so runs for different control
    planes can be told apart in a shared log stream.
    """

    def __init__(self, environment: str, region_code: str, service_name: str = "controlplane"):
        self.environment = environment
        self.region_code = region_code
        self.service_name = service_name
        self._logger = _stage_logger

    def _emit(
        self,
        event: str,
        step: int,
        stage: str,
        level: str = "info",
        **extra: Any,
    ) -> None:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "service": self.service_name,
            "environment": self.environment,
            "region_code": self.region_code,
            "step": step,
            "stage": stage,
        }
        entry.update({k: v for k, v in extra.items() if v is not None})
        self._logger.log(getattr(logging, level.upper()), json.dumps(entry))

    def log_stage_started(self, step: int, stage: str) -> None:
        self._emit("stage.started", step, stage)

    def log_stage_completed(
        self,
        step: int,
        stage: str,
        next_step: int,
        duration_seconds: Optional[float] = None,
    ) -> None:
        self._emit(
            "stage.completed",
            step,
            stage,
            next_step=next_step,
            duration_seconds=duration_seconds,
        )

    def log_stage_skipped(self, step: int, stage: str, reason: str) -> None:
        self._emit("stage.skipped", step, stage, reason=reason)

    def log_stage_failed(self, step: int, stage: str, error: str, exit_code: int) -> None:
        self._emit("stage.failed", step, stage, level="error", error=error, exit_code=exit_code)
