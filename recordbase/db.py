"""Database handle with instrumented query helpers."""

from __future__ import annotations

import contextvars
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

from recordbase.dialect import dialect_for_url

_logger = logging.getLogger("recordbase.db")
_query_logger = logging.getLogger("recordbase.db.query")
_REQUEST_STATS: contextvars.ContextVar[dict | None] = contextvars.ContextVar("recordbase_db_request_stats", default=None)


def _empty_stats() -> dict:
    return {"connections": 0, "queries": 0, "acquire_ms": 0.0, "execute_ms": 0.0, "total_ms": 0.0}


def reset_request_stats() -> dict:
    stats = _empty_stats()
    _REQUEST_STATS.set(stats)
    return stats


def get_request_stats() -> dict:
    stats = _REQUEST_STATS.get()
    if not isinstance(stats, dict):
        return _empty_stats()
    return stats


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray)):
            redacted.append(f"<bytes:{len(val)}>")
        elif isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}…{val[-10:]}")
        else:
            redacted.append(val)
    return redacted


class Database:
    """One storage handle per application, shared by every component.

    Connections are opened per operation and committed on a clean exit, so
    nothing read through this handle outlives the call that read it.
    """

    def __init__(self, url: str, *, slow_ms: float = 200.0, log_all: bool = False) -> None:
        self.url = url
        self.dialect = dialect_for_url(url)
        self._slow_ms = slow_ms
        self._log_all = log_all
        self._lock = threading.Lock()
        self._stats = _empty_stats()
        self._query_log: list[str] = []

    @property
    def errors(self) -> tuple[type[BaseException], ...]:
        return self.dialect.errors

    def stats(self) -> dict:
        with self._lock:
            return dict(self._stats)

    def query_log(self) -> list[str]:
        with self._lock:
            return list(self._query_log)

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = _empty_stats()
            self._query_log = []

    def close(self) -> None:
        self.dialect.close()

    def _record(self, query_name: str | None, elapsed_ms: float, execute_ms: float) -> None:
        with self._lock:
            self._stats["queries"] += 1
            self._stats["total_ms"] += elapsed_ms
            self._stats["execute_ms"] += execute_ms
            self._query_log.append(query_name or "unnamed")
        request = _REQUEST_STATS.get()
        if isinstance(request, dict):
            request["queries"] = request.get("queries", 0) + 1
            request["total_ms"] = request.get("total_ms", 0.0) + elapsed_ms
            request["execute_ms"] = request.get("execute_ms", 0.0) + execute_ms

    def _log_query(self, *, query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int | None) -> None:
        if not query_name and not self._log_all and elapsed_ms < self._slow_ms:
            return
        message = {
            "query": query_name or "unnamed",
            "ms": round(elapsed_ms, 2),
            "rowcount": rowcount,
            "params": _redact_params(params),
        }
        if elapsed_ms >= self._slow_ms:
            _query_logger.warning("db_slow_query=%s", message)
        elif self._log_all:
            _query_logger.info("db_query=%s", message)
        else:
            _query_logger.debug("db_query=%s", message)

    @contextmanager
    def connection(self) -> Iterator[Any]:
        with self._lock:
            self._stats["connections"] += 1
        acquire_start = time.perf_counter()
        conn = self.dialect.connect()
        acquire_ms = (time.perf_counter() - acquire_start) * 1000
        with self._lock:
            self._stats["acquire_ms"] += acquire_ms
        request = _REQUEST_STATS.get()
        if isinstance(request, dict):
            request["connections"] = request.get("connections", 0) + 1
            request["acquire_ms"] = request.get("acquire_ms", 0.0) + acquire_ms
        _logger.debug("db_conn borrowed backend=%s", self.dialect.name)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.dialect.release(conn)
            _logger.debug("db_conn returned backend=%s", self.dialect.name)

    def fetch_one(self, conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
        start = time.perf_counter()
        with self.dialect.cursor(conn) as cur:
            cur.execute(sql, list(params or []))
            execute_ms = (time.perf_counter() - start) * 1000
            row = cur.fetchone()
            result = dict(row) if row else None
            rowcount = cur.rowcount
        elapsed_ms = (time.perf_counter() - start) * 1000
        self._record(query_name, elapsed_ms, execute_ms)
        self._log_query(query_name=query_name, params=params, elapsed_ms=elapsed_ms, rowcount=rowcount)
        return result

    def fetch_all(self, conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
        start = time.perf_counter()
        with self.dialect.cursor(conn) as cur:
            cur.execute(sql, list(params or []))
            execute_ms = (time.perf_counter() - start) * 1000
            rows = cur.fetchall()
            result = [dict(r) for r in rows]
            rowcount = len(result)
        elapsed_ms = (time.perf_counter() - start) * 1000
        self._record(query_name, elapsed_ms, execute_ms)
        self._log_query(query_name=query_name, params=params, elapsed_ms=elapsed_ms, rowcount=rowcount)
        return result

    def execute(self, conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
        start = time.perf_counter()
        with self.dialect.cursor(conn) as cur:
            cur.execute(sql, list(params or []))
            rowcount = cur.rowcount
        elapsed_ms = (time.perf_counter() - start) * 1000
        self._record(query_name, elapsed_ms, elapsed_ms)
        self._log_query(query_name=query_name, params=params, elapsed_ms=elapsed_ms, rowcount=rowcount)
        return rowcount

    def insert(self, conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
        start = time.perf_counter()
        with self.dialect.cursor(conn) as cur:
            cur.execute(sql, list(params or []))
            record_id = self.dialect.inserted_id(cur)
        elapsed_ms = (time.perf_counter() - start) * 1000
        self._record(query_name, elapsed_ms, elapsed_ms)
        self._log_query(query_name=query_name, params=params, elapsed_ms=elapsed_ms, rowcount=1)
        return record_id
