"""Context window preparation for chat requests."""

from __future__ import annotations

from groupchat.jobs.interfaces import TokenCounter
from groupchat.jobs.models import ChatMessage, ChatRequest, ContextPolicy

SYSTEM_ROLE = "system"


class ContextWindowError(ValueError):
    """Raised when a request cannot be fitted into the context window."""


class ContextWindowPreparer:
    """Bounds request history by turn count and token budget.

    Leading system messages are always kept. From the remaining history at most
    ``max_turns`` user/assistant pairs ending with the last message survive, and
    the oldest of those are dropped while the prompt plus the reserved
    completion (``target_tokens``) would exceed ``max_tokens``.
    """

    def __init__(self, counter: TokenCounter) -> None:
        self.counter = counter

    def prepare(self, request: ChatRequest, policy: ContextPolicy) -> ChatRequest:
        if not request.messages:
            raise ContextWindowError("no messages to send")

        prompt_budget = policy.max_tokens - policy.target_tokens
        if prompt_budget <= 0:
            raise ContextWindowError(
                f"target tokens {policy.target_tokens} leave no room "
                f"in a {policy.max_tokens} token window",
            )

        system, history = _split_system_prefix(request.messages)
        if not history:
            raise ContextWindowError("no conversation messages after system prompt")

        keep = max(1, policy.max_turns * 2)
        history = history[-keep:]
        while len(history) > 1 and self._count(system + history, request.model) > prompt_budget:
            history = history[1:]

        used = self._count(system + history, request.model)
        if used > prompt_budget:
            raise ContextWindowError(
                f"last message needs {used} tokens, prompt budget is {prompt_budget}",
            )
        return ChatRequest(
            model=request.model,
            messages=tuple(system + history),
            max_tokens=policy.target_tokens,
        )

    def _count(self, messages: list[ChatMessage], model: str) -> int:
        return self.counter.count_messages(messages, model)


def _split_system_prefix(
    messages: tuple[ChatMessage, ...],
) -> tuple[list[ChatMessage], list[ChatMessage]]:
    index = 0
    while index < len(messages) and messages[index].role == SYSTEM_ROLE:
        index += 1
    return list(messages[:index]), list(messages[index:])
