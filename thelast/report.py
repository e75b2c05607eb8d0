"""Error types and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, wrong types, bad limits)."""


class ProviderError(AgentError):
    """Raised when the terminal (local) model adapter fails.

    Cloud adapter failures never surface as exceptions; the router cascades
    past them. Only the last adapter in the chain may raise this.
    """

    def __init__(self, kind, message: str):
        super().__init__(message)
        self.kind = kind


class ReportCollector:
    """Accumulates events during a run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.llm_stats: dict[str, dict[str, int]] = {}
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.fallbacks = 0
        self.parse_failures = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.iteration = 0

    def set_iteration(self, iteration: int):
        self.iteration = iteration

    def record_llm_call(
        self,
        adapter: str,
        tier: str,
        duration: float,
        succeeded: bool,
        *,
        tokens_in: int = 0,
        tokens_out: int = 0,
        error_kind: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        stats = self.llm_stats.setdefault(adapter, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event = {
            "iteration": self.iteration,
            "type": "llm_call",
            "adapter": adapter,
            "tier": tier,
            "duration_s": round(duration, 3),
            "succeeded": succeeded,
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
        }
        if error_kind is not None:
            event["error_kind"] = error_kind
        self.events.append(event)

    def record_fallback(self, from_adapter: str, to_adapter: str, error_kind: str):
        self.fallbacks += 1
        self.events.append(
            {
                "iteration": self.iteration,
                "type": "fallback",
                "from": from_adapter,
                "to": to_adapter,
                "error_kind": error_kind,
            }
        )

    def record_tool_call(
        self,
        name: str,
        args: list[str],
        succeeded: bool,
        duration: float,
        result_length: int,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        self.events.append(
            {
                "iteration": self.iteration,
                "type": "tool_call",
                "name": name,
                "args": args,
                "succeeded": succeeded,
                "duration_s": round(duration, 3),
                "result_length": result_length,
            }
        )

    def record_parse_failure(self, preview: str):
        self.parse_failures += 1
        self.events.append(
            {
                "iteration": self.iteration,
                "type": "parse_failure",
                "preview": preview[:200],
            }
        )

    def build_report(
        self,
        *,
        task: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        iterations: int,
        task_state: dict | None = None,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "settings": settings,
            "result": result,
            "stats": {
                "iterations": iterations,
                "llm_calls": self.llm_calls,
                "llm_calls_by_adapter": dict(self.llm_stats),
                "fallbacks": self.fallbacks,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "parse_failures": self.parse_failures,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "task_state": task_state,
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
