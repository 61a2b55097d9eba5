"""Per-request timing: wall time, database time and statement counts.

Cursor events add into a ``RequestStats`` held in a ContextVar; the copy made
for the threadpool shares the same object, so sync routes are counted too.
Statements are logged without their parameters since those carry patient data.
"""
import contextvars
import logging
import uuid
import weakref
from dataclasses import dataclass
from time import perf_counter
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy import event

from medizap import config

http_log = logging.getLogger("medizap.http")
sql_log = logging.getLogger("medizap.sql")

MAX_LOGGED_STATEMENT = 800


@dataclass
class RequestStats:
    request_id: str
    db_ms: float = 0.0
    queries: int = 0
    slow_queries: int = 0

    def record(self, elapsed_ms: float, slow: bool) -> None:
        self.db_ms += elapsed_ms
        self.queries += 1
        if slow:
            self.slow_queries += 1

    def headers(self, total_ms: float) -> dict[str, str]:
        return {
            "X-Request-ID": self.request_id,
            "X-Total-Time-ms": f"{total_ms:.1f}",
            "X-DB-Time-ms": f"{self.db_ms:.1f}",
            "X-DB-Queries": str(self.queries),
            "X-DB-Slow-Queries": str(self.slow_queries),
        }


_current: contextvars.ContextVar[Optional[RequestStats]] = contextvars.ContextVar("request_stats", default=None)
_attached_engines: "weakref.WeakSet" = weakref.WeakSet()


def start_request(request_id: str) -> RequestStats:
    stats = RequestStats(request_id=request_id)
    _current.set(stats)
    return stats


def current_stats() -> Optional[RequestStats]:
    return _current.get()


def _one_line(statement) -> str:
    stmt = " ".join(str(statement).split())
    if len(stmt) > MAX_LOGGED_STATEMENT:
        stmt = stmt[:MAX_LOGGED_STATEMENT] + " ..."
    return stmt


def attach_sqlalchemy_instrumentation(engine, slow_ms: int | None = None):
    """Hook cursor events on ``engine`` once; later calls are no-ops."""
    if engine in _attached_engines:
        return
    _attached_engines.add(engine)
    threshold = slow_ms or config.DB_SLOW_MS

    @event.listens_for(engine, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("_q_start", []).append(perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        started = conn.info.get("_q_start")
        if not started:
            return
        elapsed = (perf_counter() - started.pop()) * 1000.0
        slow = elapsed >= threshold
        stats = _current.get()
        if stats is not None:
            stats.record(elapsed, slow)
        if slow:
            shape = "<many>" if executemany else f"<{len(parameters or ())} params>"
            sql_log.warning("[%s] SLOW SQL %.1f ms | %s | %s",
                            stats.request_id if stats else "-", elapsed, shape, _one_line(statement))


class TimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        stats = start_request(request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12])
        t0 = perf_counter()
        try:
            resp = await call_next(request)
        except Exception:
            http_log.error("[%s] %s %s failed after %.1f ms | db=%.1f ms in %d q",
                           stats.request_id, request.method, request.url.path,
                           (perf_counter() - t0) * 1000.0, stats.db_ms, stats.queries)
            raise
        total = (perf_counter() - t0) * 1000.0
        resp.headers.update(stats.headers(total))
        http_log.info(
            "[%s] %s %s -> %s total=%.1f ms | db=%.1f ms in %d q",
            stats.request_id, request.method, request.url.path, resp.status_code, total, stats.db_ms, stats.queries
        )
        return resp
