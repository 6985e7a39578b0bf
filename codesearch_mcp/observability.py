"""Observability for the code search server.

Provides:
- Correlation ID generation
- JSON structured logging
- In-memory call metrics per tool and per repository
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from threading import Lock
import time
from typing import Any
import uuid

from codesearch_mcp.config import ObservabilityConfig

# Outcome of one tool call as the client sees it
OUTCOME_OK = "ok"
OUTCOME_EMPTY = "empty"  # no matches or file not found
OUTCOME_ERROR = "error"  # rejected input or a failure reported as text
OUTCOMES = (OUTCOME_OK, OUTCOME_EMPTY, OUTCOME_ERROR)

# Tool-call context passed through `extra=`
_CONTEXT_FIELDS = ("tool", "repo", "session", "outcome", "latency_ms", "error")


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return uuid.uuid4().hex[:8]


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; tool-call context comes from ``extra=``."""

    def __init__(self, include_correlation_id: bool = True):
        super().__init__()
        self.include_correlation_id = include_correlation_id

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if self.include_correlation_id:
            cid = getattr(record, "correlation_id", None)
            if cid:
                entry["cid"] = cid
        entry.update(
            {
                key: getattr(record, key)
                for key in _CONTEXT_FIELDS
                if getattr(record, key, None) is not None
            }
        )
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, separators=(",", ":"), default=str)


@dataclass
class CallStats:
    """Counters for one tool."""

    calls: int = 0
    empty: int = 0
    errors: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def add(self, outcome: str, latency_ms: float) -> None:
        self.calls += 1
        if outcome == OUTCOME_EMPTY:
            self.empty += 1
        elif outcome == OUTCOME_ERROR:
            self.errors += 1
        self.total_ms += latency_ms
        self.max_ms = max(self.max_ms, latency_ms)

    def snapshot(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "empty": self.empty,
            "errors": self.errors,
            "empty_rate": round(self.empty / self.calls, 4) if self.calls else 0.0,
            "avg_ms": round(self.total_ms / self.calls, 2) if self.calls else 0.0,
            "max_ms": round(self.max_ms, 2),
        }


class MetricsCollector:
    """Thread-safe tool-call counters, keyed by tool and by repository."""

    def __init__(self):
        self._lock = Lock()
        self._tools: dict[str, CallStats] = {}
        self._repo_calls: Counter[str] = Counter()
        self._outcomes: Counter[str] = Counter()
        self._started = time.monotonic()

    def record_call(
        self,
        tool: str,
        latency_ms: float,
        outcome: str = OUTCOME_OK,
        repo: str | None = None,
    ) -> None:
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome: {outcome}")
        with self._lock:
            self._tools.setdefault(tool, CallStats()).add(outcome, latency_ms)
            self._outcomes[outcome] += 1
            if repo:
                self._repo_calls[repo] += 1

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_s": round(time.monotonic() - self._started, 1),
                "calls": sum(self._outcomes.values()),
                "outcomes": {outcome: self._outcomes[outcome] for outcome in OUTCOMES},
                "tools": {name: stats.snapshot() for name, stats in self._tools.items()},
                "repos": dict(self._repo_calls),
            }


class ObservabilityContext:
    """Correlation IDs plus metrics for the tool dispatcher.

    Usage:
        obs = ObservabilityContext(config.observability)

        cid = obs.correlation_id()
        # ... run the tool ...
        obs.record("search_code", latency_ms=12.0, outcome="empty", repo="reth")
    """

    def __init__(self, config: ObservabilityConfig):
        self.config = config
        self.metrics = MetricsCollector()

    def correlation_id(self) -> str:
        return generate_correlation_id()

    def record(
        self,
        tool: str,
        latency_ms: float,
        outcome: str = OUTCOME_OK,
        repo: str | None = None,
    ) -> None:
        self.metrics.record_call(tool, latency_ms, outcome=outcome, repo=repo)

    def get_stats(self) -> dict[str, Any]:
        return self.metrics.get_stats()


def setup_logging(
    config: ObservabilityConfig, logger_name: str = "codesearch-mcp"
) -> logging.Logger:
    """Configure logging based on observability settings.

    Installs a single stderr handler on ``logger_name`` using either the
    JSON formatter or the plain text format. Child loggers
    (``codesearch-mcp.*``) propagate to it.

    Args:
        config: Observability configuration
        logger_name: Name of logger to configure

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    logger.setLevel(level)
    logger.propagate = False

    handler = logging.StreamHandler()
    handler.setLevel(level)

    if config.log_format == "json":
        handler.setFormatter(
            JsonLogFormatter(include_correlation_id=config.include_correlation_id)
        )
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    logger.addHandler(handler)

    return logger
