"""Process-wide runtime flags and job bookkeeping surfaced by ``/health``."""
from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any

_scheduler_active = False
_job_runs: dict[str, dict[str, Any]] = {}
_job_lock = threading.Lock()


def set_scheduler_active(active: bool) -> None:
    global _scheduler_active
    _scheduler_active = active


def is_scheduler_active() -> bool:
    return _scheduler_active


def record_job_run(name: str, *, ok: bool, error: str | None = None) -> None:
    """Remember the outcome of the latest run of a periodic job."""

    with _job_lock:
        entry = _job_runs.setdefault(name, {"runs": 0, "failures": 0})
        entry["runs"] += 1
        if not ok:
            entry["failures"] += 1
        entry["last_ok"] = ok
        entry["last_error"] = error
        entry["last_run_at"] = datetime.now(tz=UTC).isoformat()


def job_runs() -> dict[str, dict[str, Any]]:
    with _job_lock:
        return {name: dict(entry) for name, entry in _job_runs.items()}


def reset_job_runs() -> None:
    with _job_lock:
        _job_runs.clear()
