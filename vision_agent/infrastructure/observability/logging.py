import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "vision-agent"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request-scoped identifiers to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    context = structlog.contextvars.get_contextvars()
    for key in ("trace_id", "session_id", "record_id"):
        if context.get(key) and key not in event_dict:
            event_dict[key] = context[key]

    return event_dict


class VisionLogger:
    """Domain event logger for the vision pipeline"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_merge_applied(self, record_id: str, applied_fields: list, rejected_fields: Optional[Dict[str, str]] = None):
        self.logger.info(
            "merge_applied",
            record_id=record_id,
            applied_fields=applied_fields,
            rejected_fields=rejected_fields or {}
        )

    def log_commit(
        self,
        record_id: str,
        old_version: int,
        new_version: int,
        completeness_score: float,
        change_type: str,
        duration_ms: Optional[float] = None
    ):
        """Log a successful compare-and-swap"""

        self.logger.info(
            "commit",
            record_id=record_id,
            old_version=old_version,
            new_version=new_version,
            completeness_score=completeness_score,
            change_type=change_type,
            duration_ms=duration_ms
        )

    def log_version_conflict(self, record_id: str, expected_version: int, current_version: int):
        self.logger.info(
            "version_conflict",
            record_id=record_id,
            expected_version=expected_version,
            current_version=current_version
        )

    def log_side_effect_failed(self, record_id: str, side_effect: str, error: str):
        """Log a best-effort side effect that failed after a commit"""

        self.logger.warning(
            "side_effect_failed",
            record_id=record_id,
            side_effect=side_effect,
            error=error
        )

    def log_context_optimized(
        self,
        session_id: str,
        budget: int,
        token_count: int,
        strategies: list
    ):
        self.logger.info(
            "context_optimized",
            session_id=session_id,
            budget=budget,
            token_count=token_count,
            strategies=strategies
        )


# Global logger instance
vision_logger = VisionLogger("vision_agent")


class MetricsCollector:
    """In-process counters, gauges and latency stats; every sample is also logged"""

    def __init__(self, event_logger: Optional[VisionLogger] = None):
        self.counters: Dict[str, int] = {}
        self.tagged_counters: Dict[str, Dict[str, int]] = {}
        self.gauges: Dict[str, float] = {}
        self.latencies: Dict[str, Dict[str, float]] = {}
        self._logger = (event_logger or vision_logger).logger

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        stats = self.latencies.setdefault(operation, {"count": 0, "total_ms": 0.0, "max_ms": 0.0})
        stats["count"] += 1
        stats["total_ms"] += duration_ms
        stats["max_ms"] = max(stats["max_ms"], duration_ms)

        self._logger.debug("metric", metric_type="latency", operation=operation,
                           duration_ms=round(duration_ms, 3), tags=tags or {})

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Bump a counter; tagged samples are also counted per tag set"""

        self.counters[name] = self.counters.get(name, 0) + value
        if tags:
            label = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
            by_tag = self.tagged_counters.setdefault(name, {})
            by_tag[label] = by_tag.get(label, 0) + value

        self._logger.debug("metric", metric_type="counter", name=name, value=value, tags=tags or {})

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.gauges[name] = value
        self._logger.debug("metric", metric_type="gauge", name=name, value=value, tags=tags or {})

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> int:
        if not tags:
            return self.counters.get(name, 0)
        label = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return self.tagged_counters.get(name, {}).get(label, 0)

    def get_metrics_summary(self) -> Dict[str, Any]:
        latency = {
            operation: {
                "count": stats["count"],
                "avg_ms": stats["total_ms"] / stats["count"] if stats["count"] else 0.0,
                "max_ms": stats["max_ms"],
            }
            for operation, stats in self.latencies.items()
        }
        return {
            "counters": dict(self.counters),
            "tagged_counters": {name: dict(values) for name, values in self.tagged_counters.items()},
            "gauges": dict(self.gauges),
            "latency": latency,
        }
