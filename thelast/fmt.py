"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Loop structure ----------------------------------------------------------


def iteration_header(n: int, max_n: int, message_count: int) -> None:
    title = f"Iteration {n}/{max_n} ({message_count} messages)"
    _console.print(Rule(title, style="cyan"))


def completion(iterations: int, status: str) -> None:
    if status == "reply":
        _console.print(
            Text(f"  \u2713 Turn finished: {iterations} iterations", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Turn finished: {iterations} iterations, exit={status}",
                style="bold red",
            )
        )


def thought(text: str) -> None:
    line = Text()
    line.append("  Thought: ", style="dim")
    line.append(text, style="dim italic")
    _console.print(line)


# -- Providers ---------------------------------------------------------------


def provider_connected(name: str, model: str) -> None:
    line = Text()
    line.append("  \u2713 ", style="green")
    line.append(f"{name} connected", style="bold green")
    line.append(f" ({model})", style="green")
    _console.print(line)


def provider_call(name: str, model: str, tier: str) -> None:
    _console.print(Text(f"  Calling {name} ({model}) at tier {tier}", style="dim"))


def provider_timing(
    name: str, elapsed: float, tokens_in: int, tokens_out: int
) -> None:
    text = Text()
    text.append(f"  {name} responded in {elapsed:.1f}s", style="green")
    text.append(f"  tokens={tokens_in}\u2192{tokens_out}", style="green")
    _console.print(text)


def fallback(name: str, kind: str, detail: str, next_name: str | None) -> None:
    line = Text()
    line.append(f"  \u2717 {name} failed ", style="bold red")
    line.append(f"[{kind}] ", style="red")
    line.append(detail[:300], style="red")
    _console.print(line)
    if next_name:
        _console.print(Text(f"  \u21bb Falling back to {next_name}...", style="yellow"))


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    header.append(f"({args_json})", style="magenta")
    _console.print(header)


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Task state --------------------------------------------------------------


def task_status(state) -> None:
    line = Text()
    line.append("  Task: ", style="bold")
    line.append(state.task or "(none)")
    line.append(f"  status={state.status}", style="cyan")
    line.append(f"  step={state.current_step}", style="cyan")
    _console.print(line)
    if state.last_updated:
        _console.print(Text(f"  last updated {state.last_updated}", style="dim"))
    for note in state.notes[-5:]:
        _console.print(Text(f"    {note[:200]}", style="dim"))


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type exit, /exit or Ctrl-D to quit.", style="dim")
    )
