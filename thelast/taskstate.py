"""Durable task-progress record, rewritten after every agent turn."""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

from . import fmt

TASK_STATE_FILE = "task_state.json"

STATUSES = ("idle", "in_progress", "completed", "failed")

COMPLETION_MARKERS = ("completed",)
FAILURE_MARKERS = ("failed",)


@dataclass
class TaskState:
    task: str | None = None
    status: str = "idle"
    plan: list[str] = field(default_factory=list)
    current_step: int = 0
    notes: list[str] = field(default_factory=list)
    started_at: str | None = None
    last_updated: str | None = None

    def begin(self, task: str, now: str) -> None:
        self.task = task
        self.status = "in_progress"
        self.started_at = now
        self.plan = []
        self.current_step = 0
        self.notes.append(f"Task started: {task}")

    def note(self, text: str) -> None:
        self.notes.append(text)

    def record_reply(self, reply: str) -> None:
        """Note the reply and detect completion or failure from its wording."""
        self.notes.append(f"Reply: {reply}")
        lowered = reply.lower()
        if any(marker in lowered for marker in COMPLETION_MARKERS):
            self.status = "completed"
        elif any(marker in lowered for marker in FAILURE_MARKERS):
            self.status = "failed"

    @classmethod
    def from_dict(cls, data: dict) -> "TaskState":
        status = data.get("status", "idle")
        if status not in STATUSES:
            raise ValueError(f"unknown status {status!r}")
        step = data.get("current_step", 0)
        if not isinstance(step, int) or isinstance(step, bool) or step < 0:
            raise ValueError(f"invalid current_step {step!r}")
        plan = data.get("plan") or []
        notes = data.get("notes") or []
        if not isinstance(plan, list) or not isinstance(notes, list):
            raise ValueError("plan and notes must be lists")
        return cls(
            task=data.get("task"),
            status=status,
            plan=[str(p) for p in plan],
            current_step=step,
            notes=[str(n) for n in notes],
            started_at=data.get("started_at"),
            last_updated=data.get("last_updated"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class TaskStateStore:
    """Loads the record once and rewrites the whole file on every save."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> TaskState:
        if not self.path.exists():
            return TaskState()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
            return TaskState.from_dict(data)
        except (OSError, ValueError) as e:
            fmt.warning(f"unreadable task state at {self.path} ({e}), starting fresh")
            return TaskState()

    def save(self, state: TaskState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(state.to_dict(), indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, self.path)
