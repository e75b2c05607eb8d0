"""Tiered model routing with a cascading fallback chain."""

import json
import os
from enum import Enum

from . import fmt
from .eventlog import LogType
from .providers import (
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_OLLAMA_HOST,
    DEFAULT_OLLAMA_NUM_CTX,
    AnthropicAdapter,
    DeepSeekAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    ProviderAdapter,
)
from .report import ProviderError, ReportCollector

DEFAULT_MODELS = {
    "anthropic": "claude-3-5-sonnet-20241022",
    "deepseek": "deepseek-chat",
    "openai": "gpt-4o",
    "ollama": "qwen2.5-coder:14b",
}


class Tier(str, Enum):
    SMART = "SMART"
    FAST = "FAST"


DEFAULT_PREFERRED = {
    Tier.SMART: "anthropic",
    Tier.FAST: "deepseek",
}


class ModelRouter:
    """Turns a conversation into one response text.

    The chain for a tier is: the tier's preferred cloud adapter, the other
    configured cloud adapters in declared order, then the local adapter.
    Only the local adapter's failure escapes chat(), as ProviderError.
    """

    def __init__(
        self,
        cloud: list[ProviderAdapter],
        local: ProviderAdapter,
        *,
        preferred: dict[Tier, str] | None = None,
        event_log=None,
        report: ReportCollector | None = None,
        verbose: bool = False,
    ):
        self.cloud = list(cloud)
        self.local = local
        self.preferred = dict(DEFAULT_PREFERRED if preferred is None else preferred)
        self.event_log = event_log
        self.report = report
        self.verbose = verbose

    def chain(self, tier: Tier) -> list[ProviderAdapter]:
        configured = [a for a in self.cloud if a.is_configured()]
        wanted = self.preferred.get(Tier(tier))
        head = [a for a in configured if a.name == wanted]
        rest = [a for a in configured if a.name != wanted]
        return head + rest + [self.local]

    def chat(self, messages: list, tier: Tier = Tier.FAST) -> str:
        tier = Tier(tier)
        chain = self.chain(tier)
        request = json.dumps(messages, ensure_ascii=False)

        for i, adapter in enumerate(chain):
            next_adapter = chain[i + 1] if i + 1 < len(chain) else None
            self._log(LogType.API_REQ, request)
            if self.verbose:
                fmt.provider_call(adapter.name, adapter.model, tier.value)

            result = adapter.chat(messages, tier)
            m = result.metrics

            if self.report:
                self.report.record_llm_call(
                    adapter.name,
                    tier.value,
                    m.duration_ms / 1000,
                    result.ok,
                    tokens_in=m.tokens_in,
                    tokens_out=m.tokens_out,
                    error_kind=None if result.ok else result.error.value,
                )

            if result.ok:
                self._log(LogType.API_CALL, result.text, m)
                if self.verbose:
                    fmt.provider_timing(
                        adapter.name, m.duration_ms / 1000, m.tokens_in, m.tokens_out
                    )
                return result.text

            self._log(
                LogType.ERROR, f"{adapter.name} [{result.error.value}] {result.detail}"
            )
            if self.verbose:
                fmt.fallback(
                    adapter.name,
                    result.error.value,
                    result.detail,
                    next_adapter.name if next_adapter else None,
                )
            if next_adapter is None:
                raise ProviderError(
                    result.error,
                    f"{adapter.name} error [{result.error.value}]: {result.detail}",
                )
            if self.report:
                self.report.record_fallback(
                    adapter.name, next_adapter.name, result.error.value
                )

        # The chain always ends with the local adapter, which returns or raises.
        raise AssertionError("unreachable: empty adapter chain")

    def _log(self, kind: LogType, content: str, metrics=None) -> None:
        if self.event_log is not None:
            self.event_log.log(kind, content, metrics)


def build_router(
    *,
    models: dict[str, str] | None = None,
    ollama_host: str | None = None,
    ollama_num_ctx: int = DEFAULT_OLLAMA_NUM_CTX,
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    event_log=None,
    report: ReportCollector | None = None,
    verbose: bool = False,
) -> ModelRouter:
    """Construct the router from environment credentials and settings."""
    names = {**DEFAULT_MODELS, **(models or {})}
    cloud: list[ProviderAdapter] = [
        AnthropicAdapter(
            names["anthropic"],
            api_key=os.environ.get("ANTHROPIC_API_KEY"),
            max_output_tokens=max_output_tokens,
        ),
        DeepSeekAdapter(
            names["deepseek"],
            api_key=os.environ.get("DEEPSEEK_API_KEY"),
            api_base="https://api.deepseek.com",
            max_output_tokens=max_output_tokens,
        ),
        OpenAIAdapter(
            names["openai"],
            api_key=os.environ.get("OPENAI_API_KEY"),
            max_output_tokens=max_output_tokens,
        ),
    ]
    local = OllamaAdapter(
        names["ollama"],
        api_base=ollama_host or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_HOST,
        num_ctx=ollama_num_ctx,
        max_output_tokens=max_output_tokens,
    )

    if verbose:
        for adapter in cloud:
            if adapter.is_configured():
                fmt.provider_connected(adapter.name, adapter.model)
        fmt.info(f"Local fallback: ollama ({local.model}) at {local.api_base}")

    return ModelRouter(
        cloud, local, event_log=event_log, report=report, verbose=verbose
    )
