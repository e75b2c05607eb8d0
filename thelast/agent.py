import argparse
import json
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    model_overrides,
)
from .conversation import DEFAULT_CEILING, DEFAULT_TAIL, Conversation
from .decision import Action, parse_decision
from .eventlog import EventLog, LogType
from .report import AgentError, ProviderError, ReportCollector
from .router import Tier, build_router
from .taskstate import TASK_STATE_FILE, TaskState, TaskStateStore
from .tools import ToolRegistry, build_tools, cleanup_old_cmd_outputs

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
DEFAULT_WORKSPACE = "workspace"
MAX_ARG_LOG = 1000
MAX_HISTORY_SIZE = 500 * 1024  # 500KB

TOOL_OUTPUT_PREFIX = "Tool Output: "
INVALID_JSON_PROMPT = (
    "Error: Your last response was not valid JSON. Please respond with valid JSON only."
)
BRAIN_ERROR_REPLY = json.dumps(
    {"thought": "LLM error", "reply": "I encountered a brain error. Retrying..."}
)
FALLBACK_ANSWER = "I'm not sure how to respond."


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def classify_tier(text: str) -> Tier:
    """Tool output goes to the fast tier, everything else to the smart one."""
    if text.startswith(TOOL_OUTPUT_PREFIX):
        return Tier.FAST
    return Tier.SMART


def is_fresh_input(text: str) -> bool:
    """True for input typed by the user, False for loop-generated input."""
    return not text.startswith(TOOL_OUTPUT_PREFIX) and text != INVALID_JSON_PROMPT


class Agent:
    """Owns the conversation and the task state; one call per turn.

    chat() never raises for provider trouble: a terminal failure becomes a
    synthetic brain-error reply and the turn leaves no trace in history.
    """

    def __init__(
        self,
        router,
        *,
        system_prompt: str,
        task_store: TaskStateStore | None = None,
        event_log: EventLog | None = None,
        ceiling: int = DEFAULT_CEILING,
        tail: int = DEFAULT_TAIL,
        verbose: bool = False,
        clock: Callable[[], str] = _now,
    ):
        self.router = router
        self.conversation = Conversation(system_prompt, ceiling=ceiling, tail=tail)
        self.task_store = task_store
        self.task_state = task_store.load() if task_store is not None else TaskState()
        self.event_log = event_log
        self.verbose = verbose
        self._clock = clock

    def chat(self, user_input: str) -> str:
        fresh = is_fresh_input(user_input)
        if fresh:
            self._log(LogType.USER, user_input)

        self.conversation.append("user", user_input)
        try:
            content = self.router.chat(
                self.conversation.messages, classify_tier(user_input)
            )
        except ProviderError as e:
            self._log(LogType.ERROR, f"LLM error: {e}")
            if self.verbose:
                fmt.error(f"LLM error: {e}")
            return BRAIN_ERROR_REPLY

        self.conversation.append("assistant", content)
        self._update_task_state(user_input, content, fresh)
        return content

    def reset(self) -> int:
        """Drop the conversation back to the system message. Task state is kept."""
        return self.conversation.clear()

    def _update_task_state(self, user_input: str, content: str, fresh: bool) -> None:
        state = self.task_state
        now = self._clock()
        decision = parse_decision(content)

        if decision is not None:
            if fresh and state.status != "in_progress":
                state.begin(user_input, now)
            if decision.thought is not None:
                state.note(f"Thought: {decision.thought}")
                self._log(LogType.THOUGHT, decision.thought)
            if decision.action is not None:
                state.note(f"Action: {_format_action(decision.action)}")
                state.current_step += 1
            if decision.reply is not None:
                state.record_reply(decision.reply)

        state.last_updated = now
        self._persist()

    def _persist(self) -> None:
        if self.task_store is None:
            return
        try:
            self.task_store.save(self.task_state)
        except OSError as e:
            fmt.warning(f"failed to save task state: {e}")

    def _log(self, kind: LogType, content: str) -> None:
        if self.event_log is not None:
            self.event_log.log(kind, content)


def _format_action(action: Action) -> str:
    return f"{action.tool}({json.dumps(action.args, ensure_ascii=False)})"


# -- Decision loop -----------------------------------------------------------


@dataclass
class LoopResult:
    answer: str | None
    exhausted: bool
    iterations: int


def _dispatch(
    action: Action,
    tools: ToolRegistry,
    *,
    verbose: bool,
    report: ReportCollector | None,
    event_log: EventLog | None,
) -> str:
    """Run one tool call, with console, event log and report bookkeeping."""
    if event_log is not None:
        event_log.log(LogType.ACTION, _format_action(action))
    if verbose:
        args_json = json.dumps(action.args, ensure_ascii=False)
        if len(args_json) > MAX_ARG_LOG:
            args_json = args_json[:MAX_ARG_LOG] + "..."
        fmt.tool_call(action.tool, args_json)

    t0 = time.monotonic()
    result = tools.invoke(action.tool, action.args)
    elapsed = time.monotonic() - t0
    failed = result.startswith("Error")

    if verbose:
        if failed:
            fmt.tool_error(action.tool, result.split("\n", 1)[0])
        else:
            preview = result.split("\n", 1)[0][:120]
            fmt.tool_result(action.tool, elapsed, preview)
    if report is not None:
        report.record_tool_call(
            action.tool, action.args, not failed, elapsed, len(result)
        )
    return result


def run_decision_loop(
    agent,
    user_input: str,
    tools: ToolRegistry,
    *,
    max_iterations: int = 10,
    verbose: bool = False,
    report: ReportCollector | None = None,
    event_log: EventLog | None = None,
) -> LoopResult:
    """Drive the agent until it replies or the iteration cap is hit.

    Returns a LoopResult. answer is None only when the cap was exhausted.
    """
    current = user_input
    iterations = 0

    while iterations < max_iterations:
        iterations += 1
        if report is not None:
            report.set_iteration(iterations)
        if verbose:
            fmt.iteration_header(iterations, max_iterations, len(agent.conversation))

        response = agent.chat(current)
        decision = parse_decision(response)

        if decision is None:
            if verbose:
                fmt.warning("response was not valid JSON, asking again")
            if report is not None:
                report.record_parse_failure(response)
            current = INVALID_JSON_PROMPT
            continue

        if decision.thought and verbose:
            fmt.thought(decision.thought)

        if decision.reply is not None:
            if verbose:
                fmt.completion(iterations, "reply")
            return LoopResult(decision.reply, False, iterations)

        if decision.action is not None:
            result = _dispatch(
                decision.action,
                tools,
                verbose=verbose,
                report=report,
                event_log=event_log,
            )
            current = TOOL_OUTPUT_PREFIX + result
            continue

        if verbose:
            fmt.completion(iterations, "reply")
        return LoopResult(decision.thought or FALLBACK_ANSWER, False, iterations)

    if verbose:
        fmt.completion(iterations, "exhausted")
    return LoopResult(None, True, iterations)


# -- History -----------------------------------------------------------------


def _clip(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def append_history(
    workspace: str | Path,
    question: str,
    answer: str,
    state: TaskState | None = None,
) -> None:
    """Journal an answered question in <workspace>/HISTORY.md.

    Each entry is a level-two heading with the local time, followed by the
    task the question advanced (status and step) when one is active, the
    question as a blockquote and the final answer.
    """
    if not answer or not answer.strip():
        return

    path = Path(workspace) / "HISTORY.md"
    try:
        if path.exists() and path.stat().st_size >= MAX_HISTORY_SIZE:
            fmt.warning("HISTORY.md is full, answer not journaled")
            return

        parts = [f"## {datetime.now():%Y-%m-%d %H:%M:%S}"]
        if state is not None and state.task:
            parts.append(
                f"Task: {_clip(state.task)} "
                f"[{state.status}, step {state.current_step}]"
            )
        quoted = "\n".join("> " + ln for ln in _clip(question).splitlines())
        parts += [quoted or ">", answer.strip()]

        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write("\n\n".join(parts) + "\n\n")
    except OSError as e:
        fmt.warning(f"could not journal answer: {e}")


# -- CLI ---------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="thelast",
        usage="%(prog)s [options] [question]",
        description="An autonomous shell agent with tiered multi-provider LLM fallback.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="The task for the agent. Without it, an interactive session starts.",
    )
    parser.add_argument(
        "-w",
        "--workspace",
        default=_UNSET,
        help="Working directory for tools and records (default: ./workspace).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum decision loop iterations per question (default: 10).",
    )
    parser.add_argument(
        "--history-ceiling",
        type=int,
        default=_UNSET,
        help=f"Prune the conversation once it exceeds this many messages (default: {DEFAULT_CEILING}).",
    )
    parser.add_argument(
        "--history-tail",
        type=int,
        default=_UNSET,
        help=f"Messages kept after pruning, besides the system message (default: {DEFAULT_TAIL}).",
    )
    for provider in ("anthropic", "deepseek", "openai", "ollama"):
        parser.add_argument(
            f"--{provider}-model",
            default=_UNSET,
            metavar="MODEL",
            help=f"Model identifier for the {provider} adapter.",
        )
    parser.add_argument(
        "--ollama-host",
        default=_UNSET,
        help="Ollama server URL (default: $OLLAMA_HOST or http://127.0.0.1:11434).",
    )
    parser.add_argument(
        "--ollama-num-ctx",
        type=int,
        default=_UNSET,
        help="Context window requested from Ollama (default: 16384).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per model call (default: 8192).",
    )
    parser.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final answer.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Requires a question.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--no-history",
        action="store_true",
        default=_UNSET,
        help="Don't append answers to <workspace>/HISTORY.md.",
    )
    parser.add_argument(
        "--no-event-log",
        action="store_true",
        default=_UNSET,
        help="Don't write agent.db and the Markdown session log.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (thelast.toml) variant.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("thelast")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)
    if args.project:
        parser.error("--project is only valid with --init-config")
    if args.report and args.question is None:
        parser.error("--report requires a question (not available interactively)")

    load_dotenv(Path.cwd() / ".env")

    try:
        apply_config_to_args(args, load_config(Path.cwd()))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)

    args.verbose = not args.quiet
    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None

    def _report_settings():
        return {
            "workspace": str(args.workspace),
            "max_iterations": args.max_iterations,
            "history_ceiling": args.history_ceiling,
            "history_tail": args.history_tail,
            "models": model_overrides(args),
            "max_output_tokens": args.max_output_tokens,
            "ollama_num_ctx": args.ollama_num_ctx,
        }

    def _write_report(
        outcome, answer=None, exit_code=0, iterations=0, task_state=None,
        error_message=None,
    ):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            settings=_report_settings(),
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            iterations=iterations,
            task_state=task_state,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        _run_main(args, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report(
            "error",
            exit_code=1,
            iterations=report.iteration if report else 0,
            error_message=str(e),
        )
        sys.exit(1)


def _run_main(args, report, _write_report):
    project_root = Path.cwd()
    workspace = Path(args.workspace or project_root / DEFAULT_WORKSPACE).resolve()
    try:
        workspace.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise AgentError(f"cannot create workspace {workspace}: {e}")
    args.workspace = workspace
    cleanup_old_cmd_outputs(workspace)

    if args.system_prompt:
        system_prompt = args.system_prompt
    else:
        system_prompt = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")

    event_log = None if args.no_event_log else EventLog(workspace)
    try:
        router = build_router(
            models=model_overrides(args),
            ollama_host=args.ollama_host,
            ollama_num_ctx=args.ollama_num_ctx,
            max_output_tokens=args.max_output_tokens,
            event_log=event_log,
            report=report,
            verbose=args.verbose,
        )
        agent = Agent(
            router,
            system_prompt=system_prompt,
            task_store=TaskStateStore(workspace / TASK_STATE_FILE),
            event_log=event_log,
            ceiling=args.history_ceiling,
            tail=args.history_tail,
            verbose=args.verbose,
        )
        tools = build_tools(workspace, project_root)
        if event_log is not None:
            event_log.log(LogType.SYSTEM, f"Agent started in {workspace}")
        if args.verbose and agent.task_state.status == "in_progress":
            fmt.info("resuming an unfinished task")
            fmt.task_status(agent.task_state)

        if args.question is None:
            repl_loop(
                agent,
                tools,
                workspace=workspace,
                max_iterations=args.max_iterations,
                verbose=args.verbose,
                no_history=args.no_history,
                event_log=event_log,
            )
            return

        result = run_decision_loop(
            agent,
            args.question,
            tools,
            max_iterations=args.max_iterations,
            verbose=args.verbose,
            report=report,
            event_log=event_log,
        )
        if result.answer is not None:
            print(result.answer)
            if not args.no_history:
                append_history(
                    workspace, args.question, result.answer, agent.task_state
                )

        if result.exhausted:
            fmt.warning(f"max iterations ({args.max_iterations}) reached")
            _write_report(
                "exhausted",
                exit_code=2,
                iterations=result.iterations,
                task_state=agent.task_state.to_dict(),
            )
            sys.exit(2)

        _write_report(
            "success",
            answer=result.answer,
            iterations=result.iterations,
            task_state=agent.task_state.to_dict(),
        )
    finally:
        if event_log is not None:
            event_log.close()


# -- REPL --------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset the conversation (task state is kept)\n"
        "  /status            Show the current task state\n"
        "  exit, /exit, /quit Exit the session"
    )


def repl_loop(
    agent: Agent,
    tools: ToolRegistry,
    *,
    workspace: str | Path,
    max_iterations: int,
    verbose: bool,
    no_history: bool = False,
    event_log: EventLog | None = None,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path(workspace) / ".thelast" / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "thelast> ")])

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        if line in ("exit", "/exit", "/quit"):
            break

        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            dropped = agent.reset()
            fmt.info(f"context cleared ({dropped} messages removed)")
            continue
        elif cmd == "/status":
            fmt.task_status(agent.task_state)
            continue

        try:
            result = run_decision_loop(
                agent,
                line,
                tools,
                max_iterations=max_iterations,
                verbose=verbose,
                event_log=event_log,
            )
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")
            continue

        if not no_history and result.answer:
            append_history(workspace, line, result.answer, agent.task_state)
        if result.answer is not None:
            print(result.answer)
        if result.exhausted:
            fmt.warning("max iterations reached for this question.")


if __name__ == "__main__":
    main()
