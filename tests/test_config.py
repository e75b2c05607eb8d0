"""Tests for thelast.config: TOML config file loading, merging, and CLI integration."""

import argparse

import pytest

from thelast.agent import build_parser
from thelast.config import (
    _UNSET,
    ConfigError,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    model_overrides,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(*argv):
    return build_parser().parse_args(list(argv))


@pytest.fixture(autouse=True)
def _isolated_global(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path):
        assert load_config(tmp_path) == {}

    def test_global_only(self, tmp_path):
        _write_toml(tmp_path / "xdg" / "thelast" / "config.toml", "max_iterations = 7\n")
        assert load_config(tmp_path / "project") == {"max_iterations": 7}

    def test_project_overrides_global(self, tmp_path):
        _write_toml(
            tmp_path / "xdg" / "thelast" / "config.toml",
            'ollama_model = "a"\nmax_iterations = 7\n',
        )
        _write_toml(tmp_path / "proj" / "thelast.toml", 'ollama_model = "b"\n')
        result = load_config(tmp_path / "proj")
        assert result == {"ollama_model": "b", "max_iterations": 7}

    def test_invalid_toml(self, tmp_path):
        _write_toml(tmp_path / "thelast.toml", "max_iterations = = 3\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_wrong_type(self, tmp_path):
        _write_toml(tmp_path / "thelast.toml", 'max_iterations = "ten"\n')
        with pytest.raises(ConfigError, match="expected int, got str"):
            load_config(tmp_path)

    def test_bool_is_not_int(self, tmp_path):
        _write_toml(tmp_path / "thelast.toml", "history_tail = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_non_positive(self, tmp_path):
        _write_toml(tmp_path / "thelast.toml", "max_iterations = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)

    def test_unknown_key_warned_and_dropped(self, tmp_path, capsys):
        _write_toml(tmp_path / "thelast.toml", 'flavour = "mint"\nquiet = true\n')
        assert load_config(tmp_path) == {"quiet": True}
        assert "unknown config key 'flavour'" in capsys.readouterr().err

    def test_tail_must_be_below_ceiling(self, tmp_path):
        _write_toml(
            tmp_path / "thelast.toml", "history_ceiling = 10\nhistory_tail = 10\n"
        )
        with pytest.raises(ConfigError, match="must be smaller"):
            load_config(tmp_path)

    def test_window_split_across_files(self, tmp_path):
        _write_toml(tmp_path / "xdg" / "thelast" / "config.toml", "history_ceiling = 12\n")
        _write_toml(tmp_path / "p" / "thelast.toml", "history_tail = 20\n")
        with pytest.raises(ConfigError):
            load_config(tmp_path / "p")

    def test_relative_workspace_resolved_against_config(self, tmp_path):
        _write_toml(tmp_path / "p" / "thelast.toml", 'workspace = "ws"\n')
        result = load_config(tmp_path / "p")
        assert result["workspace"] == str((tmp_path / "p").resolve() / "ws")

    def test_absolute_workspace_kept(self, tmp_path):
        target = tmp_path / "elsewhere"
        _write_toml(tmp_path / "p" / "thelast.toml", f'workspace = "{target}"\n')
        assert load_config(tmp_path / "p")["workspace"] == str(target)

    def test_global_dir_respects_xdg(self, tmp_path):
        assert global_config_dir() == tmp_path / "xdg" / "thelast"

    def test_global_dir_default(self, monkeypatch, tmp_path):
        monkeypatch.delenv("XDG_CONFIG_HOME")
        monkeypatch.setenv("HOME", str(tmp_path))
        assert global_config_dir() == tmp_path / ".config" / "thelast"


# ===========================================================================
# Applying config to argparse
# ===========================================================================


class TestApplyConfig:
    def test_defaults_when_nothing_set(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.max_iterations == 10
        assert args.history_ceiling == 100
        assert args.history_tail == 50
        assert args.max_output_tokens == 8192
        assert args.ollama_num_ctx == 16384
        assert args.workspace is None
        assert args.quiet is False
        assert args.no_history is False
        assert args.color is False and args.no_color is False

    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"max_iterations": 25, "no_event_log": True})
        assert args.max_iterations == 25
        assert args.no_event_log is True

    def test_cli_wins(self):
        args = _make_args("--max-iterations", "3", "-q")
        apply_config_to_args(args, {"max_iterations": 25, "quiet": False})
        assert args.max_iterations == 3
        assert args.quiet is True

    def test_color_key_controls_pair(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_cli_color_flag_beats_config(self):
        args = _make_args("--color")
        apply_config_to_args(args, {"color": False})
        assert args.color is True
        assert args.no_color is False

    def test_effective_window_checked(self):
        args = _make_args("--history-tail", "100")
        with pytest.raises(ConfigError):
            apply_config_to_args(args, {})

    def test_small_window_ok(self):
        args = _make_args("--history-ceiling", "12", "--history-tail", "10")
        apply_config_to_args(args, {})
        assert (args.history_ceiling, args.history_tail) == (12, 10)

    @pytest.mark.parametrize(
        "flags",
        [
            ("--history-tail", "0"),
            ("--history-ceiling", "-5"),
            ("--max-iterations", "0"),
            ("--ollama-num-ctx", "0"),
        ],
    )
    def test_cli_values_must_be_positive(self, flags):
        args = _make_args(*flags)
        with pytest.raises(ConfigError, match="must be at least 1"):
            apply_config_to_args(args, {})

    def test_unset_sentinel_from_parser(self):
        args = _make_args()
        assert args.max_iterations is _UNSET
        assert args.quiet is _UNSET

    def test_plain_namespace(self):
        args = argparse.Namespace(history_ceiling=_UNSET, history_tail=_UNSET)
        apply_config_to_args(args, {"ollama_host": "http://gpu:11434"})
        assert args.ollama_host == "http://gpu:11434"


class TestModelOverrides:
    def test_collects_set_models(self):
        args = _make_args("--ollama-model", "llama3")
        apply_config_to_args(args, {"anthropic_model": "claude-x"})
        assert model_overrides(args) == {"anthropic": "claude-x", "ollama": "llama3"}


class TestGenerateConfig:
    def test_global_template(self):
        text = generate_config()
        assert "~/.config/thelast/config.toml" in text
        assert "# max_iterations = 10" in text
        assert all(line == "" or line.startswith("#") for line in text.splitlines())

    def test_project_template(self):
        assert "<project>/thelast.toml" in generate_config(project=True)
