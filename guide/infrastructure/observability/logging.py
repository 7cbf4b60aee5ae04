from typing import Deque, Dict, Any, Optional
from collections import Counter, deque
import logging
import sys

import structlog

# Identifiers bound per request or run; copied onto every record that lacks them.
PIPELINE_ID_KEYS = ("trace_id", "run_id", "conversation_id")

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

LATENCY_WINDOW = 500


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "guide-server",
    environment: str = "development"
) -> None:
    """Configure structlog over stdlib logging, JSON in deployments and console locally"""

    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_pipeline_ids,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service=service_name, environment=environment)


def add_pipeline_ids(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    bound = structlog.contextvars.get_contextvars()
    for key in PIPELINE_ID_KEYS:
        if key not in event_dict and bound.get(key):
            event_dict[key] = bound[key]
    return event_dict


class GuideLogger:
    """Typed log events for stages, streams and context builds"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_stage_transition(
        self,
        run_id: str,
        stage: str,
        status: str,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None
    ):
        log = self.logger.error if status == "error" else self.logger.info
        log("stage_transition", run_id=run_id, stage=stage, status=status, duration_ms=duration_ms, error=error)

    def log_stream_summary(
        self,
        scope: str,
        has_done: bool,
        accepted_suggestions: int,
        dropped: Dict[str, int]
    ):
        """A stream that never produced done is logged as a warning"""

        log = self.logger.info if has_done else self.logger.warning
        log(
            "stream_summary",
            scope=scope,
            has_done=has_done,
            accepted_suggestions=accepted_suggestions,
            dropped_total=sum(dropped.values()),
            dropped=dropped
        )

    def log_fetcher_failure(self, source: str, user_id: str, error: str):
        self.logger.warning("fetcher_failed", source=source, user_id=user_id, error=error)

    def log_context_built(
        self,
        user_id: str,
        candidate_count: int,
        by_source: Dict[str, int],
        payload_chars: int,
        elided: int = 0
    ):
        self.logger.info(
            "context_built",
            user_id=user_id,
            candidate_count=candidate_count,
            by_source=by_source,
            payload_chars=payload_chars,
            elided=elided
        )


guide_logger = GuideLogger("guide")


class MetricsCollector:
    """In-process counters and recent latencies, reported by the health endpoint"""

    def __init__(self, latency_window: int = LATENCY_WINDOW):
        self.counters: Counter = Counter()
        self.latencies: Dict[str, Deque[float]] = {}
        self.latency_window = latency_window

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        window = self.latencies.setdefault(operation, deque(maxlen=self.latency_window))
        window.append(duration_ms)
        guide_logger.logger.debug("metric", kind="latency", operation=operation, duration_ms=duration_ms, tags=tags or {})

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Count under the plain name and once more per tag, e.g. ``pipeline.stage_failed[stage=INGRESS]``"""

        self.counters[name] += value
        for key, tag_value in (tags or {}).items():
            self.counters[f"{name}[{key}={tag_value}]"] += value
        guide_logger.logger.debug("metric", kind="counter", name=name, value=value, tags=tags or {})

    def get_metrics_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = dict(self.counters)
        for operation, window in self.latencies.items():
            if not window:
                continue
            ordered = sorted(window)
            summary[f"latency.{operation}"] = {
                "count": len(ordered),
                "avg": round(sum(ordered) / len(ordered), 2),
                "p95": round(ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))], 2),
                "max": round(ordered[-1], 2),
            }
        return summary
