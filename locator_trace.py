"""
Call-scoped tracing for route lookups and measure resolution.

Provides a thread-local TraceContext that records:
  - Per-stage timing (fetch_route, normalize, resolve, nearest_search)
  - Per-outbound-query timing (service, endpoint, elapsed_ms, HTTP status,
    provider status such as "query_error")
  - A one-line summary (total elapsed, total queries, outcome)

Tracing is opt-in. Nothing is recorded unless the caller installs a
context for the current thread:

    from locator_trace import TraceContext, set_trace, clear_trace

    ctx = TraceContext(trace_id="route-009")
    set_trace(ctx)
    try:
        find_route_segment(layer_url, "009", 0, 5)
    finally:
        ctx.log_summary()
        clear_trace()
"""

import time
import threading
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

logger = logging.getLogger(__name__)


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class QueryCallRecord:
    """One outbound Feature Service query."""
    service: str          # "featureservice"
    endpoint: str         # caller label, e.g. "route_by_id"
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # "query_error", "parse_error", "timeout", ...
    retried: bool = False
    stage: str = ""


@dataclass
class StageRecord:
    """One step of a resolution call."""
    stage_name: str
    start_ts: float = 0.0
    end_ts: float = 0.0
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for a single lookup/resolution."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[QueryCallRecord] = field(default_factory=list)
    _current_stage: str = ""

    def start_stage(self, name: str):
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        api_in_stage = sum(1 for c in self.api_calls if c.stage == stage_name)
        rec = StageRecord(
            stage_name=stage_name,
            start_ts=start_ts,
            end_ts=end_ts,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            api_calls_made=api_in_stage,
            error_class=error_class,
            error_message=error_message,
        )
        self.stages.append(rec)

        status = "ERR" if error_class else "OK"
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms queries=%d%s",
            self.trace_id,
            stage_name,
            status,
            rec.elapsed_ms,
            api_in_stage,
            err_info,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        retried: bool = False,
    ):
        rec = QueryCallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            retried=retried,
            stage=self._current_stage,
        )
        self.api_calls.append(rec)
        logger.info(
            "  [query] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            self._current_stage or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status,
        )

    def summary_dict(self) -> Dict[str, Any]:
        """Return a summary dict suitable for logging."""
        total_elapsed = int((time.time() - self.request_start) * 1000)
        errored = [s for s in self.stages if s.error_class]
        completed = [s for s in self.stages if not s.error_class]

        if errored:
            outcome = "error"
        elif not completed:
            outcome = "empty"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "stages_completed": len(completed),
            "stages_errored": len(errored),
            "final_outcome": outcome,
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d queries=%d "
            "completed=%d errored=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["stages_completed"],
            s["stages_errored"],
            s["final_outcome"],
        )

    def stages_to_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "stage": s.stage_name,
                "elapsed_ms": s.elapsed_ms,
                "api_calls": s.api_calls_made,
                "error": (
                    f"{s.error_class}: {s.error_message}"
                    if s.error_class else None
                ),
            }
            for s in self.stages
        ]


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current thread's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace context."""
    _trace_local.ctx = None


@contextmanager
def traced_stage(name: str):
    """Time the enclosed block as ``name`` on the active trace, if any.

    Exceptions are recorded on the stage and re-raised.
    """
    trace = get_trace()
    if trace is None:
        yield
        return

    trace.start_stage(name)
    start = time.time()
    try:
        yield
    except Exception as e:
        trace.record_stage(
            name, start, time.time(),
            error_class=type(e).__name__,
            error_message=str(e),
        )
        raise
    else:
        trace.record_stage(name, start, time.time())
    finally:
        trace.end_stage()
