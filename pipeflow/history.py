import json
import os
import threading

from pipeflow.models import JobRun
from pipeflow.publish import PublishResult, PublishSkipped


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _publish_record(outcome) -> dict | None:
    if isinstance(outcome, PublishSkipped):
        return {"status": "skipped", "reason": outcome.reason}
    if isinstance(outcome, PublishResult):
        return {
            "status": "published" if outcome.ok else "failed",
            "action": outcome.action,
            "location": outcome.location,
            "error": outcome.error,
        }
    return None


def run_record(run: JobRun) -> dict:
    return {
        "run_id": run.run_id,
        "workflow": run.workflow,
        "job": run.job,
        "event": {"kind": run.event.kind, "branch": run.event.branch, "sha": run.event.sha},
        "state": run.state.value,
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
        "duration": run.duration,
        "error": run.error,
        "steps": [
            {
                "index": r.index,
                "name": r.name,
                "status": r.status.value,
                "exit_code": r.exit_code,
                "duration": round(r.duration, 3),
                "error": r.error,
            }
            for r in run.results
        ],
        "publish": _publish_record(run.publish),
    }


class RunHistory:
    """Append-only JSON Lines log, one record per finished JobRun."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def append(self, run: JobRun) -> None:
        if not run.state.terminal:
            raise ValueError(f"Run {run.run_id} is still {run.state.value}")
        line = json.dumps(run_record(run), sort_keys=True)
        with self._lock:
            parent = os.path.dirname(self.path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(line + "\n")

    def records(self) -> list[dict]:
        if not os.path.exists(self.path):
            return []
        with self._lock, open(self.path) as f:
            return [json.loads(line) for line in f if line.strip()]
