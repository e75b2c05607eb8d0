"""Bounded conversation history anchored by an immutable system message."""

import copy

DEFAULT_CEILING = 100
DEFAULT_TAIL = 50

ROLES = ("user", "assistant")


class Conversation:
    """Ordered role-tagged messages; index 0 is always the system directive.

    Whenever an append pushes the length past `ceiling`, the history is
    replaced by the system message plus the last `tail` messages.
    """

    def __init__(
        self,
        system_prompt: str,
        *,
        ceiling: int = DEFAULT_CEILING,
        tail: int = DEFAULT_TAIL,
    ):
        if tail < 1:
            raise ValueError(f"tail must be at least 1, got {tail}")
        if tail >= ceiling:
            raise ValueError(
                f"tail ({tail}) must be smaller than ceiling ({ceiling})"
            )
        self.ceiling = ceiling
        self.tail = tail
        self._system = {"role": "system", "content": system_prompt}
        self._messages: list[dict] = [self._system]

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def system_prompt(self) -> str:
        return self._system["content"]

    @property
    def messages(self) -> list[dict]:
        """A copy of the history, safe to hand to adapters."""
        return copy.deepcopy(self._messages)

    def append(self, role: str, content: str) -> int:
        """Append a message, prune if needed. Returns the number of messages dropped."""
        if role not in ROLES:
            raise ValueError(f"cannot append a {role!r} message")
        self._messages.append({"role": role, "content": content})
        return self.prune()

    def prune(self) -> int:
        if len(self._messages) <= self.ceiling:
            return 0
        dropped = len(self._messages) - 1 - self.tail
        self._messages = [self._system] + self._messages[-self.tail :]
        return dropped

    def last_user(self) -> str | None:
        for m in reversed(self._messages):
            if m["role"] == "user":
                return m["content"]
        return None

    def clear(self) -> int:
        """Drop everything but the system message. Returns the number removed."""
        dropped = len(self._messages) - 1
        self._messages = [self._system]
        return dropped
