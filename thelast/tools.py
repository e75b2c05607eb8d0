"""Tool registry and implementations.

Every tool takes positional string arguments and returns a string. Failures
are returned as text starting with "Error:" and never raised to the caller.
"""

import os
import subprocess
import sys
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

SCRATCH_DIR = ".thelast"
MAX_INLINE_OUTPUT = 10 * 1024  # 10KB returned inline
MAX_FILE_OUTPUT = 1 * 1024 * 1024  # 1MB captured at most
MAX_READ_BYTES = 50 * 1024
OUTPUT_FILE_TTL = 600  # seconds before cmd_output files are stale
COMMAND_TIMEOUT = 30
RESTART_GRACE = 0.5
_KILL_WAIT_TIMEOUT = 5


@dataclass(frozen=True)
class ToolSpec:
    name: str
    func: Callable[..., str]
    description: str
    min_args: int = 0
    max_args: int = 0


class ToolRegistry:
    """Fixed name -> ToolSpec mapping, resolved once at startup."""

    def __init__(self, specs: list[ToolSpec]):
        self._specs = {spec.name: spec for spec in specs}

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def names(self) -> list[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def invoke(self, name: str, args: list[str]) -> str:
        spec = self._specs.get(name)
        if spec is None:
            return f"Error: Tool {name} not found."
        if not spec.min_args <= len(args) <= spec.max_args:
            if spec.min_args == spec.max_args:
                expected = str(spec.min_args)
            else:
                expected = f"{spec.min_args}-{spec.max_args}"
            return (
                f"Error: {name} takes {expected} argument(s), got {len(args)}"
            )
        try:
            return spec.func(*args)
        except Exception as e:
            return f"Error: {e}"


def resolve_tool_path(name: str, workspace: Path, project_root: Path) -> Path:
    """Absolute paths as-is, src/... from the project root, the rest in the workspace."""
    if Path(name).is_absolute():
        return Path(name)
    if name.startswith("src/"):
        return project_root / name
    return workspace / name


# -- run_command -------------------------------------------------------------


def cleanup_old_cmd_outputs(workspace: str | Path) -> int:
    """Remove cmd_output_* files older than OUTPUT_FILE_TTL. Returns the count."""
    scratch = Path(workspace) / SCRATCH_DIR
    if not scratch.is_dir():
        return 0
    cutoff = time.time() - OUTPUT_FILE_TTL
    removed = 0
    for f in scratch.glob("cmd_output_*.txt"):
        try:
            if f.stat().st_mtime < cutoff:
                f.unlink()
                removed += 1
        except OSError:
            pass
    return removed


def _kill_process_tree(proc: subprocess.Popen) -> None:
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def _save_large_output(output: str, workspace: Path) -> str:
    """Spill oversized output to the scratch dir and return a pointer to it."""
    size_kb = len(output.encode("utf-8")) / 1024
    scratch = workspace / SCRATCH_DIR
    filename = f"cmd_output_{uuid.uuid4().hex[:12]}.txt"
    try:
        scratch.mkdir(parents=True, exist_ok=True)
        (scratch / filename).write_text(output, encoding="utf-8")
    except OSError:
        truncated = output.encode("utf-8")[:MAX_INLINE_OUTPUT].decode(
            "utf-8", errors="replace"
        )
        return truncated + "\n[output truncated]"
    return (
        f"Output too large for context ({size_kb:.1f}KB).\n"
        f"Full output saved to: {SCRATCH_DIR}/{filename}\n"
        "Filter it locally (grep, head, tail) or read it with read_file."
    )


def _capture_process(proc: subprocess.Popen, timeout: int) -> tuple[str, bool]:
    """Drain merged stdout/stderr until exit or timeout. Returns (output, timed_out)."""
    chunks: list[bytes] = []
    total = 0

    def _reader():
        nonlocal total
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if total >= MAX_FILE_OUTPUT:
                    continue  # keep draining so the child never blocks on a full pipe
                chunks.append(chunk[: MAX_FILE_OUTPUT - total])
                total += len(chunks[-1])
        except (OSError, ValueError):
            pass

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader.join(timeout=2)
    proc.stdout.close()
    return b"".join(chunks).decode("utf-8", errors="replace"), timed_out


def run_command(command: str, workspace: Path, timeout: int = COMMAND_TIMEOUT) -> str:
    """Run a shell command in the workspace with stdout and stderr merged."""
    if not command.strip():
        return "Error: empty command"
    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=workspace,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return f"Error: failed to start command: {e}"

    output, timed_out = _capture_process(proc, timeout)

    if timed_out:
        result = f"Error: command timed out after {timeout}s"
        if output:
            result += "\n" + output
    elif proc.returncode != 0:
        result = f"Error: command exited with code {proc.returncode}"
        if output:
            result += "\n" + output
    else:
        result = output or "(no output)"

    if len(result.encode("utf-8")) > MAX_INLINE_OUTPUT:
        pointer = _save_large_output(result, workspace)
        if result.startswith("Error:"):
            return result.split("\n", 1)[0] + "\n" + pointer
        return pointer
    return result


# -- Files -------------------------------------------------------------------


def write_file(path: Path, content: str) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return f"File written to {path}"


def read_file(path: Path, display: str) -> str:
    try:
        with path.open("rb") as f:
            data = f.read(MAX_READ_BYTES + 1)
    except OSError as e:
        return f"Error reading file: {e}"
    if b"\x00" in data[:8192]:
        return f"Error reading file: binary file detected: {display}"
    text = data[:MAX_READ_BYTES].decode("utf-8", errors="replace")
    if len(data) > MAX_READ_BYTES:
        text += f"\n[truncated at {MAX_READ_BYTES // 1024}KB]"
    return text


def list_files(path: Path) -> str:
    try:
        children = sorted(path.iterdir())
    except OSError as e:
        return f"Error listing files: {e}"
    return "\n".join(c.name + ("/" if c.is_dir() else "") for c in children)


# -- restart -----------------------------------------------------------------


def _exit_process() -> None:
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(0)


def schedule_restart(exit_fn: Callable[[], None] = _exit_process) -> str:
    """Exit after a grace delay so the final response can flush."""
    timer = threading.Timer(RESTART_GRACE, exit_fn)
    timer.daemon = True
    timer.start()
    return "Restarting now..."


def build_tools(
    workspace: str | Path,
    project_root: str | Path,
    *,
    exit_fn: Callable[[], None] = _exit_process,
    command_timeout: int = COMMAND_TIMEOUT,
) -> ToolRegistry:
    """Bind the tool set to a workspace and project root."""
    workspace = Path(workspace)
    project_root = Path(project_root)

    def _path(name: str) -> Path:
        return resolve_tool_path(name, workspace, project_root)

    return ToolRegistry(
        [
            ToolSpec(
                "run_command",
                lambda cmd: run_command(cmd, workspace, command_timeout),
                "Execute a shell command in the workspace.",
                1,
                1,
            ),
            ToolSpec(
                "write_file",
                lambda name, content: write_file(_path(name), content),
                "Create or overwrite a file, creating parent directories.",
                2,
                2,
            ),
            ToolSpec(
                "read_file",
                lambda name: read_file(_path(name), name),
                "Read a UTF-8 text file.",
                1,
                1,
            ),
            ToolSpec(
                "list_files",
                lambda name=".": list_files(_path(name)),
                "List a directory (subdirectories end with /).",
                0,
                1,
            ),
            ToolSpec(
                "restart",
                lambda: schedule_restart(exit_fn),
                "Restart the agent process to load modified source.",
                0,
                0,
            ),
        ]
    )
