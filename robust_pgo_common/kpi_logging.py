"""Structured KPI events for solver runs (JSON lines).

Events: batch_received, optimization_start, optimization_end and one event
per loop-closure lifecycle action (loop_closure_removed, prefix_ignored,
prefix_revived). Every payload carries `event`, `ts` and the logger's
extra fields; fields passed as None are dropped.
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import AbstractContextManager
from typing import Any, Dict, Optional, TextIO

logger = logging.getLogger("robust_pgo.kpi")


class KPILogger(AbstractContextManager):
    """Write KPI events to the `robust_pgo.kpi` logger and/or a .jsonl file."""

    def __init__(
        self,
        enabled: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        log_path: Optional[str] = None,
        emit_to_logger: bool = True,
    ):
        self.enabled = enabled
        self.extra_fields: Dict[str, Any] = dict(extra_fields or {})
        self.emit_to_logger = emit_to_logger
        self.events_emitted = 0
        self._sink: Optional[TextIO] = open(log_path, "w", encoding="utf-8") if log_path else None

    def _record(self, event: str, fields: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        payload: Dict[str, Any] = {"event": event, "ts": time.time(), **self.extra_fields}
        payload.update((k, v) for k, v in fields.items() if v is not None)
        line = json.dumps(payload, sort_keys=True)
        self.events_emitted += 1
        if self.emit_to_logger:
            logger.info("KPI %s", line)
        if self._sink is not None:
            self._sink.write(line + "\n")
            self._sink.flush()

    def batch_received(self, batch_id: int, factor_count: int, value_count: int, **fields: Any) -> None:
        self._record("batch_received",
                     dict(batch_id=batch_id, factor_count=factor_count, value_count=value_count, **fields))

    def optimization_start(self, opt_id: int, factor_count: int, value_count: int) -> None:
        self._record("optimization_start",
                     dict(opt_id=opt_id, factor_count=factor_count, value_count=value_count))

    def optimization_end(
        self,
        opt_id: int,
        duration_s: float,
        updated_keys: Optional[int] = None,
        *,
        error: Optional[float] = None,
        max_translation_delta: Optional[float] = None,
    ) -> None:
        self._record("optimization_end", dict(
            opt_id=opt_id,
            duration_s=duration_s,
            updated_keys=updated_keys,
            error=error,
            max_translation_delta=max_translation_delta,
        ))

    def lifecycle(self, action: str, **fields: Any) -> None:
        self._record(action, fields)

    def close(self) -> None:
        sink, self._sink = self._sink, None
        if sink is not None:
            sink.close()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
