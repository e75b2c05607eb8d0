"""Tests for parsing the model's JSON decisions."""

import pytest

from thelast.decision import Action, parse_decision, strip_fences


class TestStripFences:
    def test_json_fence(self):
        assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence(self):
        assert strip_fences('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_fence_with_surrounding_whitespace(self):
        assert strip_fences('  \n```json\n{"a": 1}\n```\n  ') == '{"a": 1}'

    def test_no_fence(self):
        assert strip_fences('  {"a": 1} ') == '{"a": 1}'


class TestParseDecision:
    def test_reply(self):
        d = parse_decision('{"thought": "easy", "reply": "hi"}')
        assert d.thought == "easy"
        assert d.reply == "hi"
        assert d.action is None

    def test_action(self):
        d = parse_decision(
            '{"thought": "look", "action": {"tool": "run_command", "args": ["ls"]}}'
        )
        assert d.action == Action(tool="run_command", args=["ls"])
        assert d.reply is None

    def test_fenced(self):
        d = parse_decision('```json\n{"reply": "ok"}\n```')
        assert d.reply == "ok"

    def test_args_omitted(self):
        d = parse_decision('{"action": {"tool": "restart"}}')
        assert d.action.args == []

    def test_args_single_string(self):
        d = parse_decision('{"action": {"tool": "read_file", "args": "notes.md"}}')
        assert d.action.args == ["notes.md"]

    def test_thought_only(self):
        d = parse_decision('{"thought": "hmm"}')
        assert d.thought == "hmm"
        assert d.action is None and d.reply is None

    def test_null_fields_are_absent(self):
        d = parse_decision('{"thought": null, "action": null, "reply": "x"}')
        assert d.thought is None
        assert d.action is None
        assert d.reply == "x"

    def test_empty_reply_kept(self):
        assert parse_decision('{"reply": ""}').reply == ""

    @pytest.mark.parametrize(
        "text",
        [
            "not json at all",
            "",
            "[1, 2]",
            '"just a string"',
            "{}",
            '{"answer": "wrong key"}',
            '{"reply": 42}',
            '{"thought": ["a"]}',
            '{"action": "run_command"}',
            '{"action": {"args": ["ls"]}}',
            '{"action": {"tool": "", "args": []}}',
            '{"action": {"tool": "run_command", "args": [1, 2]}}',
            '{"action": {"tool": "run_command", "args": {"cmd": "ls"}}}',
            '{"reply": "unterminated',
        ],
    )
    def test_shape_errors(self, text):
        assert parse_decision(text) is None

    def test_non_string_input(self):
        assert parse_decision(None) is None
