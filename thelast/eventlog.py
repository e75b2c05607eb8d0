"""Durable event log: SQLite events table plus a Markdown session transcript."""

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path


class LogType(str, Enum):
    THOUGHT = "THOUGHT"
    ACTION = "ACTION"
    API_REQ = "API_REQ"
    API_CALL = "API_CALL"
    USER = "USER"
    SYSTEM = "SYSTEM"
    ERROR = "ERROR"


@dataclass
class Metrics:
    """Usage metadata attached to a provider call."""

    model: str | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float | None = None
    duration_ms: int = 0


# USD per million tokens (input, output), matched by substring of the model name.
# Models not listed (local Ollama) cost nothing.
PRICES: list[tuple[str, float, float]] = [
    ("claude-3-5", 3.00, 15.00),
    ("gpt-4o", 2.50, 10.00),
    ("deepseek", 0.07, 0.28),
]

API_REQ_PREVIEW = 100


def calculate_cost(model: str | None, tokens_in: int, tokens_out: int) -> float:
    if not model or not tokens_in or not tokens_out:
        return 0.0
    for needle, price_in, price_out in PRICES:
        if needle in model:
            return tokens_in / 1_000_000 * price_in + tokens_out / 1_000_000 * price_out
    return 0.0


_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    start_time TEXT,
    summary TEXT
);
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT,
    timestamp TEXT,
    type TEXT,
    content TEXT,
    model TEXT,
    tokens_in INTEGER,
    tokens_out INTEGER,
    cost REAL,
    duration_ms INTEGER
);
"""


class EventLog:
    """Writes every event to <workspace>/agent.db and logs/session_<id>.md."""

    def __init__(self, workspace: str | Path, session_id: str | None = None):
        workspace = Path(workspace)
        logs_dir = workspace / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)

        started = datetime.now(timezone.utc)
        self.session_id = session_id or started.isoformat().replace(":", "-").replace(
            ".", "-"
        )
        self.db_path = workspace / "agent.db"
        self.md_path = logs_dir / f"session_{self.session_id}.md"

        self._db = sqlite3.connect(self.db_path)
        self._db.executescript(_SCHEMA)
        self._db.execute(
            "INSERT OR IGNORE INTO sessions (id, start_time) VALUES (?, ?)",
            (self.session_id, started.isoformat()),
        )
        self._db.commit()
        self._write_md(f"# Agent Session: {self.session_id}\n\n")

    def log(
        self, kind: LogType, content: str, metrics: Metrics | None = None
    ) -> None:
        kind = LogType(kind)
        timestamp = datetime.now(timezone.utc).isoformat()
        metrics = metrics or Metrics()
        cost = metrics.cost
        if cost is None:
            cost = calculate_cost(metrics.model, metrics.tokens_in, metrics.tokens_out)

        self._db.execute(
            "INSERT INTO events (session_id, timestamp, type, content, model, "
            "tokens_in, tokens_out, cost, duration_ms) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                self.session_id,
                timestamp,
                kind.value,
                content,
                metrics.model,
                metrics.tokens_in,
                metrics.tokens_out,
                cost,
                metrics.duration_ms,
            ),
        )
        self._db.commit()
        self._write_md_entry(kind, content, metrics, cost)

    def close(self) -> None:
        self._db.close()

    def _write_md_entry(
        self, kind: LogType, content: str, metrics: Metrics, cost: float
    ) -> None:
        header = f"[{datetime.now().strftime('%H:%M:%S')}] {kind.value}"
        if metrics.model:
            header += f" ({metrics.model})"

        meta = ""
        if metrics.tokens_in or metrics.tokens_out:
            meta += f" [Tokens: {metrics.tokens_in} \u2192 {metrics.tokens_out}]"
        if cost > 0:
            meta += f" [Cost: ${cost:.5f}]"

        body = content.strip()
        if kind is LogType.API_REQ:
            body = _summarize_request(content) or body
        elif kind is LogType.ERROR:
            body = f"!! {body} !!"

        self._write_md(f"{header}{meta}: {body}\n")

    def _write_md(self, text: str) -> None:
        with self.md_path.open("a", encoding="utf-8") as f:
            f.write(text)


def _summarize_request(content: str) -> str | None:
    """Render a serialized message list as its last message, on one line."""
    try:
        history = json.loads(content)
    except json.JSONDecodeError:
        return None
    if not isinstance(history, list) or not history:
        return None
    last = history[-1]
    if not isinstance(last, dict):
        return None
    text = str(last.get("content", "")).replace("\n", " ")
    role = str(last.get("role", "user")).capitalize()
    suffix = "..." if len(text) > API_REQ_PREVIEW else ""
    return f'{role}: "{text[:API_REQ_PREVIEW]}{suffix}"'
