"""Best-effort audit log of tool proposals, attempts and results.

Writes go through a small thread pool and never raise into the caller. A bounded
in-process set of recent keys drops duplicate rows caused by upstream retries.
"""

import hashlib
import json
import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from plancoach.dates import utcnow
from plancoach.storage import Repository
from plancoach.text import truncate

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 64 * 1024

TOOL_EVENTS = (
    "tool_call_proposed",
    "tool_call_attempted",
    "tool_call_blocked",
    "tool_call_succeeded",
    "tool_call_failed",
)

# Argument keys worth keeping in the compact summary, per tool.
SUMMARY_KEYS = {
    "track_progress": ["target_name", "status", "value"],
    "create_simple_action": ["title", "kind", "target_reps", "time_of_day"],
    "create_framework": ["title", "target_reps"],
    "update_action_structure": ["target_name", "new_target_reps", "new_scheduled_days", "new_time_of_day", "new_title"],
    "activate_plan_action": ["target_name"],
    "archive_plan_action": ["target_name"],
    "deactivate_plan_action": ["target_name"],
    "break_down_action": ["target_name", "problem"],
}


def stable_hash(value: Any) -> str:
    encoded = json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def summarize_args(tool_name: Optional[str], args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not args:
        return {}
    keys = SUMMARY_KEYS.get(tool_name or "", list(args.keys())[:6])
    summary = {}
    for key in keys:
        if key not in args or args[key] is None:
            continue
        value = args[key]
        summary[key] = truncate(value, 80) if isinstance(value, str) else value
    return summary


class ToolLedger:
    def __init__(
        self,
        repository: Repository,
        max_dedup: int = 2000,
        background: bool = True,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.repository = repository
        self.max_dedup = max_dedup
        self.background = background
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()
        self._executor = executor
        self._pending: List[Future] = []

    def _remember(self, key: str) -> bool:
        """Record a dedup key; False if it was already seen."""
        with self._lock:
            if key in self._seen:
                return False
            self._seen[key] = None
            while len(self._seen) > self.max_dedup:
                self._seen.popitem(last=False)
            return True

    def log_event(
        self,
        event: str,
        tool_name: Optional[str] = None,
        user_id: Optional[str] = None,
        request_id: Optional[str] = None,
        source: str = "dispatcher",
        args: Optional[Dict[str, Any]] = None,
        result: Any = None,
        error: Optional[str] = None,
        latency_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Queue an audit row. Returns False when it was dropped as a duplicate or failed to queue."""
        try:
            args_hash = stable_hash(args or {})
            result_hash = stable_hash(result) if result is not None else ""
            key = "|".join([request_id or "", source, event, tool_name or "", args_hash, result_hash])
            if not self._remember(key):
                return False

            row = {
                "created_at": utcnow(),
                "request_id": request_id,
                "user_id": user_id,
                "source": source,
                "event": event,
                "tool_name": tool_name,
                "args_summary": summarize_args(tool_name, args),
                "args_hash": args_hash,
                "result_hash": result_hash or None,
                "error": truncate(error, 500) if error else None,
                "latency_ms": latency_ms,
                "metadata": metadata or {},
            }
            encoded = json.dumps(row, default=str)
            if len(encoded.encode("utf-8")) > MAX_PAYLOAD_BYTES:
                row["metadata"] = {"truncated": True}
                row["args_summary"] = {}

            if not self.background:
                self._write(row)
                return True
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ledger")
            future = self._executor.submit(self._write, row)
            with self._lock:
                self._pending = [f for f in self._pending if not f.done()]
                self._pending.append(future)
            return True
        except Exception as e:
            logger.warning("[Ledger] Could not queue %s/%s: %s", event, tool_name, e)
            return False

    def _write(self, row: Dict[str, Any]) -> None:
        try:
            self.repository.insert_ledger_event(row)
        except Exception as e:
            logger.warning("[Ledger] Write failed for %s: %s", row.get("event"), e)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for queued writes. Used at shutdown and in tests."""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            future.result(timeout=timeout)
