"""OpenAI-compatible chat handler (direct SDK).

Base class for Tabby and any other server speaking /v1/chat/completions.
"""

import logging
import math
import re
from collections.abc import AsyncIterator

import openai

from tabby_provider._config import HandlerOptions, ModelInfo
from tabby_provider.messages import (
    content_text,
    convert_to_openai_messages,
    flatten_to_prompt,
)

log = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>\s*", re.DOTALL)
_THINK_UNCLOSED_RE = re.compile(r"<think>.*", re.DOTALL)

# The SDK refuses an empty key; local servers ignore it.
_PLACEHOLDER_KEY = "unused"


class ProviderError(RuntimeError):
    """Raised when a provider cannot complete a request."""


def strip_thinking(text: str) -> str:
    """Remove <think>...</think> blocks (and unclosed <think>) from model output."""
    text = _THINK_RE.sub("", text)
    text = _THINK_UNCLOSED_RE.sub("", text)
    return text.strip()


def _partial_tag_len(text: str, tag: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of tag."""
    for n in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:n]):
            return n
    return 0


class ThinkTagSplitter:
    """Splits streamed deltas into "text" and "reasoning" chunks on <think> tags.

    Tags may arrive split across deltas, so a possible partial tag at the end
    of the buffer is held back until the next update() or final().
    """

    OPEN = "<think>"
    CLOSE = "</think>"

    def __init__(self):
        self._buf = ""
        self._inside = False

    def update(self, text: str) -> list[dict]:
        self._buf += text
        out: list[dict] = []
        while True:
            tag = self.CLOSE if self._inside else self.OPEN
            idx = self._buf.find(tag)
            if idx >= 0:
                self._emit(out, self._buf[:idx])
                self._buf = self._buf[idx + len(tag) :]
                self._inside = not self._inside
                continue
            cut = len(self._buf) - _partial_tag_len(self._buf, tag)
            self._emit(out, self._buf[:cut])
            self._buf = self._buf[cut:]
            return out

    def final(self) -> list[dict]:
        out: list[dict] = []
        self._emit(out, self._buf)
        self._buf = ""
        return out

    def _emit(self, out: list[dict], text: str):
        if not text:
            return
        kind = "reasoning" if self._inside else "text"
        if out and out[-1]["type"] == kind:
            out[-1]["text"] += text
        else:
            out.append({"type": kind, "text": text})


def create_client(
    api_key: str | None,
    base_url: str | None,
    max_retries: int = 2,
    timeout: float | None = None,
):
    kwargs = {}
    if timeout is not None:
        kwargs["timeout"] = timeout
    return openai.AsyncOpenAI(
        api_key=api_key or _PLACEHOLDER_KEY,
        base_url=base_url,
        max_retries=max_retries,
        **kwargs,
    )


def count_tokens(content) -> int:
    """Rough token estimate: one token per four characters of text."""
    text = content_text(content)
    if not text:
        return 0
    return math.ceil(len(text) / 4)


class OpenAIHandler:
    """Chat handler for an OpenAI-compatible endpoint.

    create_message() yields dict chunks:
      {"type": "text", "text": ...}
      {"type": "reasoning", "text": ...}
      {"type": "usage", "input_tokens": ..., "output_tokens": ...}
    """

    label = "OpenAI"

    def __init__(self, options: HandlerOptions):
        self.options = options
        self._client = create_client(
            options.openai_api_key,
            options.openai_base_url,
            max_retries=options.max_retries,
            timeout=options.request_timeout,
        )

    def get_model(self) -> tuple[str, ModelInfo]:
        return self.options.openai_model_id or "", self.options.model_info

    def count_tokens(self, content) -> int:
        return count_tokens(content)

    def _request_kwargs(self, info: ModelInfo) -> dict:
        kwargs = {}
        if self.options.model_temperature is not None:
            kwargs["temperature"] = self.options.model_temperature
        if self.options.include_max_tokens and info.max_tokens > 0:
            kwargs["max_tokens"] = info.max_tokens
        return kwargs

    def _usage_chunk(self, usage, system_prompt: str, messages: list, output: str) -> dict:
        if usage is not None:
            return {
                "type": "usage",
                "input_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "output_tokens": getattr(usage, "completion_tokens", 0) or 0,
            }
        input_tokens = count_tokens(system_prompt) + sum(
            count_tokens(m.get("content")) for m in messages
        )
        return {
            "type": "usage",
            "input_tokens": input_tokens,
            "output_tokens": count_tokens(output),
        }

    async def create_message(
        self, system_prompt: str, messages: list[dict]
    ) -> AsyncIterator[dict]:
        model_id, info = self.get_model()
        chat_messages = [{"role": "system", "content": system_prompt}]
        chat_messages += convert_to_openai_messages(messages)
        kwargs = self._request_kwargs(info)

        if not self.options.openai_streaming_enabled:
            async for chunk in self._create_message_once(
                model_id, chat_messages, system_prompt, messages, kwargs
            ):
                yield chunk
            return

        splitter = ThinkTagSplitter()
        produced: list[str] = []
        last_usage = None
        started = False
        try:
            stream = await self._client.chat.completions.create(
                model=model_id,
                messages=chat_messages,
                stream=True,
                stream_options={"include_usage": True},
                **kwargs,
            )
            async with stream:
                async for chunk in stream:
                    delta = chunk.choices[0].delta if chunk.choices else None
                    if delta is not None:
                        if delta.content:
                            produced.append(delta.content)
                            for out in splitter.update(delta.content):
                                started = True
                                yield out
                        reasoning = getattr(delta, "reasoning_content", None)
                        if reasoning:
                            started = True
                            yield {"type": "reasoning", "text": reasoning}
                    if getattr(chunk, "usage", None):
                        last_usage = chunk.usage
        except openai.APIError as exc:
            if started:
                raise ProviderError(f"{self.label} stream error: {exc}") from exc
            log.warning(
                "%s chat stream failed (%s); falling back to /completions",
                self.label,
                exc,
            )
            async for chunk in self._complete_fallback(
                model_id, system_prompt, messages, kwargs
            ):
                yield chunk
            return

        for out in splitter.final():
            yield out
        yield self._usage_chunk(last_usage, system_prompt, messages, "".join(produced))

    async def _create_message_once(
        self, model_id, chat_messages, system_prompt, messages, kwargs
    ) -> AsyncIterator[dict]:
        try:
            response = await self._client.chat.completions.create(
                model=model_id, messages=chat_messages, **kwargs
            )
        except openai.APIError as exc:
            raise ProviderError(f"{self.label} completion error: {exc}") from exc

        text = (response.choices[0].message.content or "") if response.choices else ""
        splitter = ThinkTagSplitter()
        for out in splitter.update(text) + splitter.final():
            yield out
        yield self._usage_chunk(response.usage, system_prompt, messages, text)

    async def _complete_fallback(
        self, model_id, system_prompt, messages, kwargs
    ) -> AsyncIterator[dict]:
        prompt = flatten_to_prompt(system_prompt, messages)
        try:
            response = await self._client.completions.create(
                model=model_id, prompt=prompt, **kwargs
            )
        except openai.APIError as exc:
            raise ProviderError(f"{self.label} completion error: {exc}") from exc

        text = (response.choices[0].text or "") if response.choices else ""
        splitter = ThinkTagSplitter()
        for out in splitter.update(text) + splitter.final():
            yield out
        yield self._usage_chunk(response.usage, system_prompt, messages, text)

    async def complete_prompt(self, prompt: str) -> str:
        model_id, info = self.get_model()
        try:
            response = await self._client.chat.completions.create(
                model=model_id,
                messages=[{"role": "user", "content": prompt}],
                **self._request_kwargs(info),
            )
        except openai.APIError as exc:
            raise ProviderError(f"{self.label} completion error: {exc}") from exc

        text = (response.choices[0].message.content or "") if response.choices else ""
        return strip_thinking(text) if "<think>" in text else text
