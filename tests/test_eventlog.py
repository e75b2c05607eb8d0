"""Tests for the SQLite + Markdown event log."""

import json
import sqlite3

import pytest

from thelast.eventlog import EventLog, LogType, Metrics, calculate_cost


@pytest.fixture
def log(tmp_path):
    event_log = EventLog(tmp_path, session_id="s1")
    yield event_log
    event_log.close()


def _rows(db_path):
    with sqlite3.connect(db_path) as conn:
        return conn.execute(
            "SELECT session_id, type, content, model, tokens_in, tokens_out, cost "
            "FROM events ORDER BY id"
        ).fetchall()


class TestCost:
    def test_claude(self):
        assert calculate_cost("claude-3-5-sonnet-20241022", 1_000_000, 1_000_000) == (
            pytest.approx(18.0)
        )

    def test_gpt4o(self):
        assert calculate_cost("gpt-4o", 2_000_000, 100_000) == pytest.approx(6.0)

    def test_deepseek(self):
        assert calculate_cost("deepseek-chat", 1_000_000, 1_000_000) == pytest.approx(
            0.35
        )

    def test_local_is_free(self):
        assert calculate_cost("qwen2.5-coder:14b", 5000, 5000) == 0.0

    def test_missing_model(self):
        assert calculate_cost(None, 10, 10) == 0.0


class TestEventLog:
    def test_files_created(self, log, tmp_path):
        assert log.db_path == tmp_path / "agent.db"
        assert log.md_path == tmp_path / "logs" / "session_s1.md"
        assert log.md_path.read_text().startswith("# Agent Session: s1")

    def test_session_row(self, log):
        with sqlite3.connect(log.db_path) as conn:
            rows = conn.execute("SELECT id FROM sessions").fetchall()
        assert rows == [("s1",)]

    def test_event_row(self, log):
        log.log(LogType.USER, "hello")
        assert _rows(log.db_path) == [("s1", "USER", "hello", None, 0, 0, 0.0)]

    def test_metrics_and_computed_cost(self, log):
        log.log(
            LogType.API_CALL,
            "{}",
            Metrics(model="gpt-4o", tokens_in=1_000_000, tokens_out=0, duration_ms=5),
        )
        log.log(
            LogType.API_CALL,
            "{}",
            Metrics(model="gpt-4o", tokens_in=1_000_000, tokens_out=1_000_000),
        )
        rows = _rows(log.db_path)
        assert rows[0][6] == 0.0
        assert rows[1][6] == pytest.approx(12.5)
        md = log.md_path.read_text()
        assert "API_CALL (gpt-4o)" in md
        assert "[Tokens: 1000000 → 1000000]" in md
        assert "[Cost: $12.50000]" in md

    def test_explicit_cost_kept(self, log):
        log.log(LogType.API_CALL, "x", Metrics(model="gpt-4o", tokens_in=1, tokens_out=1, cost=1.5))
        assert _rows(log.db_path)[0][6] == 1.5

    def test_kind_accepts_string(self, log):
        log.log("SYSTEM", "boot")
        assert _rows(log.db_path)[0][1] == "SYSTEM"

    def test_api_req_summarized(self, log):
        messages = [
            {"role": "system", "content": "s"},
            {"role": "user", "content": "line one\nline two " + "z" * 200},
        ]
        log.log(LogType.API_REQ, json.dumps(messages))
        md = log.md_path.read_text()
        assert 'API_REQ: User: "line one line two ' in md
        assert '..."' in md
        # full request still stored in the database
        assert _rows(log.db_path)[0][2] == json.dumps(messages)

    def test_error_highlighted(self, log):
        log.log(LogType.ERROR, "ollama down")
        assert "ERROR: !! ollama down !!" in log.md_path.read_text()

    def test_sessions_share_database(self, tmp_path):
        first = EventLog(tmp_path, session_id="a")
        first.log(LogType.USER, "1")
        first.close()
        second = EventLog(tmp_path, session_id="b")
        second.log(LogType.USER, "2")
        second.close()
        sessions = {row[0] for row in _rows(tmp_path / "agent.db")}
        assert sessions == {"a", "b"}
        assert (tmp_path / "logs" / "session_a.md").exists()
        assert (tmp_path / "logs" / "session_b.md").exists()
