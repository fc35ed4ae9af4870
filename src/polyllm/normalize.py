"""Repair message sequences for APIs that demand strict turn-taking.

Anthropic rejects conversations that contain system-role messages, that do
not open with a user turn, that repeat a role twice in a row, or that end on
an assistant turn. :func:`normalize_messages` fixes all four, in that order.
"""

from __future__ import annotations

from typing import Any

from polyllm.config import NormalizerConfig

SYSTEM_WRAPPER = (
    "# CONTEXT ---\n{content}\n"
    "Before answering you can reason about the instructions and answer using "
    "<thinking></thinking> tags\n---"
)

Message = dict[str, Any]


def normalize_messages(
    messages: list[Message],
    config: NormalizerConfig | None = None,
) -> list[Message]:
    """Return a new list satisfying the alternating user/assistant contract."""
    config = config or NormalizerConfig()

    result = _handle_system(messages, config)

    if not result or result[0]["role"] != "user":
        result.insert(0, _placeholder("user", config))

    if config.alternation_mode == "merge":
        result = _merge_runs(result, config)
    else:
        result = _insert_placeholders(result, config)

    if result[-1]["role"] == "assistant":
        result.append(_placeholder("user", config))

    return result


def _handle_system(messages: list[Message], config: NormalizerConfig) -> list[Message]:
    handled: list[Message] = []
    for message in messages:
        if message["role"] != "system":
            handled.append(dict(message))
        elif config.system_mode == "fold":
            handled.append({"role": "user", "content": _wrap_system(message["content"])})
    return handled


def _wrap_system(content: str | list[dict[str, Any]]) -> str | list[dict[str, Any]]:
    if isinstance(content, str):
        return SYSTEM_WRAPPER.format(content=content)
    text = "\n".join(block["text"] for block in content if block.get("type") == "text")
    others = [block for block in content if block.get("type") != "text"]
    return [{"type": "text", "text": SYSTEM_WRAPPER.format(content=text)}, *others]


def _insert_placeholders(messages: list[Message], config: NormalizerConfig) -> list[Message]:
    result: list[Message] = []
    for message in messages:
        if result and result[-1]["role"] == message["role"]:
            opposite = "assistant" if message["role"] == "user" else "user"
            result.append(_placeholder(opposite, config))
        result.append(message)
    return result


def _merge_runs(messages: list[Message], config: NormalizerConfig) -> list[Message]:
    result: list[Message] = []
    for message in messages:
        if result and result[-1]["role"] == message["role"]:
            previous = result[-1]
            previous["content"] = _join(previous["content"], message["content"], config.merge_separator)
        else:
            result.append(message)
    return result


def _join(
    left: str | list[dict[str, Any]],
    right: str | list[dict[str, Any]],
    separator: str,
) -> str | list[dict[str, Any]]:
    if isinstance(left, str) and isinstance(right, str):
        return f"{left}{separator}{right}"
    return [*_as_blocks(left), {"type": "text", "text": separator}, *_as_blocks(right)]


def _as_blocks(content: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return list(content)


def _placeholder(role: str, config: NormalizerConfig) -> Message:
    return {"role": role, "content": config.placeholder}
