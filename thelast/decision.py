"""Parsing of the model's JSON decision (thought / action / reply)."""

import json
import re
from dataclasses import dataclass, field

_FENCE_RE = re.compile(r"^\s*```(?:json)?[ \t]*\n?(.*?)\n?[ \t]*```\s*$", re.DOTALL)


@dataclass
class Action:
    tool: str
    args: list[str] = field(default_factory=list)


@dataclass
class Decision:
    thought: str | None = None
    action: Action | None = None
    reply: str | None = None


def strip_fences(text: str) -> str:
    """Remove a surrounding ``` or ```json fenced block, if any."""
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _parse_action(raw) -> Action | None:
    if not isinstance(raw, dict):
        return None
    tool = raw.get("tool")
    if not isinstance(tool, str) or not tool:
        return None
    args = raw.get("args", [])
    if isinstance(args, str):
        args = [args]
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        return None
    return Action(tool=tool, args=list(args))


def parse_decision(text: str) -> Decision | None:
    """Parse a response into a Decision, or None when it breaks the contract.

    Accepted: a JSON object (optionally fenced) with at least one of
    `thought` (string), `action` ({tool, args}) and `reply` (string).
    """
    if not isinstance(text, str):
        return None
    try:
        data = json.loads(strip_fences(text))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    if not any(key in data for key in ("thought", "action", "reply")):
        return None

    decision = Decision()

    if data.get("thought") is not None:
        if not isinstance(data["thought"], str):
            return None
        decision.thought = data["thought"]

    if "action" in data and data["action"] is not None:
        decision.action = _parse_action(data["action"])
        if decision.action is None:
            return None

    if "reply" in data and data["reply"] is not None:
        if not isinstance(data["reply"], str):
            return None
        decision.reply = data["reply"]

    return decision
