"""Provider adapters: one per upstream model-serving endpoint, all via LiteLLM.

Adapters never raise. Every call returns an AdapterResult that is either ok
(response text plus usage metrics) or an error classified by ErrorKind, so the
router can walk its fallback chain without intercepting exceptions.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache

from .eventlog import Metrics

DEFAULT_MAX_OUTPUT_TOKENS = 8192
DEFAULT_OLLAMA_NUM_CTX = 16384
DEFAULT_OLLAMA_HOST = "http://127.0.0.1:11434"
REQUEST_TIMEOUT = 600


class ErrorKind(str, Enum):
    UNCONFIGURED = "unconfigured"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    BAD_RESPONSE = "bad_response"
    UNKNOWN = "unknown"


@dataclass
class AdapterResult:
    text: str | None = None
    error: ErrorKind | None = None
    detail: str = ""
    metrics: Metrics = field(default_factory=Metrics)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(
        cls, kind: ErrorKind, detail: str, metrics: Metrics | None = None
    ) -> "AdapterResult":
        return cls(error=kind, detail=detail, metrics=metrics or Metrics())


@lru_cache(maxsize=1)
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list) -> int:
    """Approximate prompt size with tiktoken, ~4 tokens of overhead per message."""
    total = sum(len(_encoder().encode(m.get("content") or "")) for m in messages)
    return total + 4 * len(messages)


def usable_key(key: str | None) -> str | None:
    """Return the key when it looks like a real secret key, else None."""
    if key and key.strip().startswith("sk-"):
        return key.strip()
    return None


def classify_error(exc: Exception) -> ErrorKind:
    """Map a LiteLLM (or transport) exception onto an ErrorKind."""
    import litellm

    if isinstance(exc, litellm.AuthenticationError):
        return ErrorKind.AUTH
    if isinstance(exc, litellm.RateLimitError):
        return ErrorKind.RATE_LIMIT
    # Timeout subclasses APIConnectionError, so it is checked first.
    if isinstance(exc, (litellm.Timeout, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (litellm.APIConnectionError, ConnectionError)):
        return ErrorKind.NETWORK
    if isinstance(getattr(exc, "status_code", None), int):
        return ErrorKind.HTTP_STATUS
    return ErrorKind.UNKNOWN


def _int_or_none(value) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


class ProviderAdapter:
    """Base adapter. Subclasses set `name` and shape the completion request."""

    name = "base"

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.max_output_tokens = max_output_tokens

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"

    @property
    def litellm_model(self) -> str:
        return f"{self.name}/{self.model}"

    def is_configured(self) -> bool:
        return usable_key(self.api_key) is not None

    def translate(self, messages: list) -> list[dict]:
        return [{"role": m["role"], "content": m["content"]} for m in messages]

    def extra_kwargs(self) -> dict:
        return {}

    def chat(self, messages: list, tier=None) -> AdapterResult:
        """Send the conversation upstream. Returns the raw response text."""
        if not self.is_configured():
            return AdapterResult.failure(
                ErrorKind.UNCONFIGURED, f"{self.name}: no usable credential"
            )

        import litellm

        litellm.suppress_debug_info = True

        kwargs = dict(
            model=self.litellm_model,
            messages=self.translate(messages),
            max_tokens=self.max_output_tokens,
            timeout=REQUEST_TIMEOUT,
            **self.extra_kwargs(),
        )
        api_key = usable_key(self.api_key)
        if api_key is not None:
            kwargs["api_key"] = api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        t0 = time.monotonic()
        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            elapsed_ms = int((time.monotonic() - t0) * 1000)
            return AdapterResult.failure(
                classify_error(e),
                f"{self.name}: {e}",
                Metrics(model=self.model, duration_ms=elapsed_ms),
            )
        elapsed_ms = int((time.monotonic() - t0) * 1000)

        try:
            text = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            text = None
        if not isinstance(text, str) or not text.strip():
            return AdapterResult.failure(
                ErrorKind.BAD_RESPONSE,
                f"{self.name}: response carried no text content",
                Metrics(model=self.model, duration_ms=elapsed_ms),
            )

        usage = getattr(response, "usage", None)
        tokens_in = _int_or_none(getattr(usage, "prompt_tokens", None))
        tokens_out = _int_or_none(getattr(usage, "completion_tokens", None))
        if tokens_in is None:
            tokens_in = estimate_tokens(messages)
        if tokens_out is None:
            tokens_out = len(_encoder().encode(text))

        return AdapterResult(
            text=text,
            metrics=Metrics(
                model=self.model,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                duration_ms=elapsed_ms,
            ),
        )


class AnthropicAdapter(ProviderAdapter):
    name = "anthropic"

    def translate(self, messages: list) -> list[dict]:
        # The first message is the system directive; the rest are plain
        # user/assistant turns. LiteLLM lifts a leading system message into
        # Anthropic's top-level `system` parameter.
        if not messages:
            return []
        system = messages[0]["content"] if messages[0]["role"] == "system" else ""
        turns = [
            {"role": m["role"], "content": m["content"]}
            for m in messages
            if m["role"] in ("user", "assistant")
        ]
        return [{"role": "system", "content": system}] + turns


class OpenAICompatAdapter(ProviderAdapter):
    """Chat-completions endpoint that supports JSON-object response format."""

    def extra_kwargs(self) -> dict:
        return {"response_format": {"type": "json_object"}}


class DeepSeekAdapter(OpenAICompatAdapter):
    name = "deepseek"


class OpenAIAdapter(OpenAICompatAdapter):
    name = "openai"


class OllamaAdapter(ProviderAdapter):
    """Local model server. Always configured; it ends every fallback chain."""

    name = "ollama"

    def __init__(
        self,
        model: str,
        *,
        api_base: str = DEFAULT_OLLAMA_HOST,
        num_ctx: int = DEFAULT_OLLAMA_NUM_CTX,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ):
        super().__init__(
            model, api_base=api_base, max_output_tokens=max_output_tokens
        )
        self.num_ctx = num_ctx

    @property
    def litellm_model(self) -> str:
        return f"ollama_chat/{self.model}"

    def is_configured(self) -> bool:
        return True

    def extra_kwargs(self) -> dict:
        return {"format": "json", "num_ctx": self.num_ctx}
