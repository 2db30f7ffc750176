"""Prompt history types and builders."""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable


DEFAULT_SYSTEM = "You are a helpful assistant."

TOOL_INSTRUCTIONS = (
    "You can call host tools. To call one, reply with a fenced block exactly like:\n"
    "```json\n"
    '{{"id": "call-1", "name": "<tool name>", "parameters": {{...}}}}\n'
    "```\n"
    "Use a new id for every call. Available tools:\n"
    "{tools}"
)

REASONING_PROMPT = (
    "Think through the following problem step by step. "
    "Show your reasoning, then state the conclusion.\n\nProblem: {problem}"
)

_THINK_BLOCK = re.compile(r"<think>.*?(</think>|$)", re.DOTALL)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class PromptTurn:
    role: Role
    content: str

    def as_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


def coerce_history(history: Iterable[Any]) -> list[PromptTurn]:
    """Accept ``PromptTurn`` objects or ``{"role", "content"}`` dicts."""
    turns: list[PromptTurn] = []
    for item in history:
        if isinstance(item, PromptTurn):
            turns.append(item)
        elif isinstance(item, dict):
            turns.append(PromptTurn(Role(item.get("role", "user")), str(item.get("content", ""))))
        else:
            raise TypeError(f"Unsupported history item: {item!r}")
    return turns


def validate_history(turns: list[PromptTurn]) -> None:
    for index, turn in enumerate(turns):
        if turn.role is Role.SYSTEM and index != 0:
            raise ValueError("A system turn must come first in the prompt history")


def build_prompt_history(
    turns: Iterable[Any],
    system_prompt: str | None = None,
    tool_descriptions: str | None = None,
) -> list[PromptTurn]:
    """Return the history with a single leading system turn.

    An existing leading system turn is kept and the tool instructions are
    appended to it; otherwise ``system_prompt`` is inserted.
    """
    history = coerce_history(turns)
    validate_history(history)
    if history and history[0].role is Role.SYSTEM:
        system, rest = history[0].content, history[1:]
    else:
        system, rest = system_prompt or DEFAULT_SYSTEM, history
    if tool_descriptions:
        system = f"{system}\n\n{TOOL_INSTRUCTIONS.format(tools=tool_descriptions)}"
    return [PromptTurn(Role.SYSTEM, system), *rest]


def to_messages(turns: Iterable[PromptTurn]) -> list[dict[str, str]]:
    return [turn.as_message() for turn in turns]


def strip_thinking_markup(text: str) -> str:
    """Drop ``<think>`` sections before text goes back into a prompt."""
    return _THINK_BLOCK.sub("", text).strip()


def _render_prompt(tokenizer: Any, messages: list[dict[str, str]]) -> str:
    if hasattr(tokenizer, "apply_chat_template") and getattr(tokenizer, "chat_template", None):
        return tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
    lines = []
    for msg in messages:
        role = msg.get("role", "user").capitalize()
        lines.append(f"{role}: {msg.get('content','')}")
    lines.append("Assistant:")
    return "\n".join(lines)
