"""Conversion of framework messages to OpenAI chat format.

Framework messages look like::

    {"role": "user", "content": "hi"}
    {"role": "user", "content": [{"type": "text", "text": "hi"},
                                 {"type": "image", "source": {...}}]}
    {"role": "assistant", "content": [{"type": "tool_use", "id": ..., "name": ..., "input": {...}}]}
"""

import json
from typing import Any


def _image_part(block: dict) -> dict:
    source = block.get("source") or {}
    url = f"data:{source.get('media_type', 'image/png')};base64,{source.get('data', '')}"
    return {"type": "image_url", "image_url": {"url": url}}


def _tool_result_text(block: dict) -> str:
    content = block.get("content")
    if isinstance(content, list):
        parts = []
        for b in content:
            if b.get("type") == "text":
                parts.append(b.get("text", ""))
        return "\n".join(parts)
    return content or ""


def _convert_user(content: list) -> list[dict]:
    out: list[dict] = []
    parts: list[dict] = []
    for block in content:
        kind = block.get("type")
        if kind == "tool_result":
            # Tool messages must directly follow the assistant's tool_calls
            out.append(
                {
                    "role": "tool",
                    "tool_call_id": block.get("tool_use_id", ""),
                    "content": _tool_result_text(block),
                }
            )
        elif kind == "image":
            parts.append(_image_part(block))
        elif kind == "text":
            parts.append({"type": "text", "text": block.get("text", "")})
    if parts:
        out.append({"role": "user", "content": parts})
    return out


def _convert_assistant(content: list) -> dict:
    texts: list[str] = []
    tool_calls: list[dict] = []
    for block in content:
        kind = block.get("type")
        if kind == "text":
            texts.append(block.get("text", ""))
        elif kind == "tool_use":
            tool_calls.append(
                {
                    "id": block.get("id", ""),
                    "type": "function",
                    "function": {
                        "name": block.get("name", ""),
                        "arguments": json.dumps(block.get("input", {})),
                    },
                }
            )
    msg: dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) or None}
    if tool_calls:
        msg["tool_calls"] = tool_calls
    return msg


def convert_to_openai_messages(messages: list[dict]) -> list[dict]:
    """Framework messages -> OpenAI chat messages (system prompt not included)."""
    out: list[dict] = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content")
        if isinstance(content, str) or content is None:
            out.append({"role": role, "content": content or ""})
        elif role == "assistant":
            out.append(_convert_assistant(content))
        else:
            out.extend(_convert_user(content))
    return out


def content_text(content: str | list | None) -> str:
    """Plain text of a message content (text and tool_result blocks only)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if block.get("type") == "text":
            parts.append(block.get("text", ""))
        elif block.get("type") == "tool_result":
            parts.append(_tool_result_text(block))
    return "\n".join(p for p in parts if p)


def flatten_to_prompt(system_prompt: str, messages: list[dict]) -> str:
    """Render a conversation as one prompt for the plain completions endpoint."""
    sections = []
    if system_prompt:
        sections.append(f"System: {system_prompt}")
    for message in messages:
        label = "Assistant" if message.get("role") == "assistant" else "User"
        sections.append(f"{label}: {content_text(message.get('content'))}")
    sections.append("Assistant:")
    return "\n\n".join(sections)
