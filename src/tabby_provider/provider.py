"""Tabby class: sync facade over TabbyHandler with usage tracking."""

import asyncio
import time
from collections.abc import AsyncIterator

from tabby_provider._config import HandlerOptions
from tabby_provider.providers.tabby import TabbyHandler, get_tabby_models


def _run_async(coro):
    # Check for a running loop up front: ProviderError is a RuntimeError too.
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    import nest_asyncio

    nest_asyncio.apply()
    loop = asyncio.get_event_loop()
    return loop.run_until_complete(coro)


class Tabby:
    """Chat with a Tabby server from synchronous code.

    Unset arguments fall back to TABBY_MODEL / TABBY_BASE_URL / TABBY_API_KEY,
    then to http://localhost:8080. Token counts are cumulative across calls.
    """

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        max_concurrent: int = 8,
        max_retries: int = 2,
        temperature: float | None = 0.0,
        timeout: float | None = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self.total_input_tokens = 0
        self.total_output_tokens = 0

        self.handler = TabbyHandler(
            HandlerOptions(
                tabby_base_url=base_url,
                tabby_api_key=api_key,
                tabby_model_id=model,
                model_temperature=temperature,
                request_timeout=timeout,
                max_retries=max_retries,
            )
        )
        self.model, _ = self.handler.get_model()
        # "<tabby>/v1" -> "<tabby>"
        self.base_url = self.handler.options.openai_base_url.removesuffix("/v1")
        self.api_key = self.handler.options.openai_api_key

    def _track(self, chunk: dict):
        self.total_input_tokens += chunk.get("input_tokens", 0)
        self.total_output_tokens += chunk.get("output_tokens", 0)

    async def stream(
        self, messages: list[dict], system_prompt: str = ""
    ) -> AsyncIterator[dict]:
        """Handler chunks as they arrive; usage chunks also update the totals."""
        async for chunk in self.handler.create_message(system_prompt, messages):
            if chunk["type"] == "usage":
                self._track(chunk)
            yield chunk

    async def _chat(self, messages: list[dict], system_prompt: str) -> str:
        parts = []
        async for chunk in self.stream(messages, system_prompt):
            if chunk["type"] == "text":
                parts.append(chunk["text"])
        return "".join(parts)

    def chat(self, messages: list[dict], system_prompt: str = "") -> str:
        """Send a conversation; returns the reply text (reasoning dropped)."""
        return _run_async(self._chat(messages, system_prompt))

    def complete(self, prompt: str) -> str:
        return _run_async(self.handler.complete_prompt(prompt))

    def generate(
        self,
        prompts: str | list[str],
        system_prompt: str | None = None,
        silent: bool = False,
    ) -> list[str]:
        """One reply per prompt, requests run concurrently."""
        prompt_list = [prompts] if isinstance(prompts, str) else prompts

        in_before = self.total_input_tokens
        out_before = self.total_output_tokens

        t0 = time.monotonic()
        results = _run_async(self._batch(prompt_list, system_prompt or ""))
        elapsed = time.monotonic() - t0

        call_in = self.total_input_tokens - in_before
        call_out = self.total_output_tokens - out_before
        if not silent and call_out > 0:
            tps = call_out / elapsed if elapsed > 0 else 0
            print(f"  {call_in} in | {call_out} out | {tps:.0f} tok/s")

        return results

    async def _batch(self, prompts: list[str], system_prompt: str) -> list[str]:
        sem = asyncio.Semaphore(self.max_concurrent)

        async def run_one(prompt: str) -> str:
            async with sem:
                return await self._chat(
                    [{"role": "user", "content": prompt}], system_prompt
                )

        return await asyncio.gather(*[run_one(p) for p in prompts])

    def list_models(self) -> list[str]:
        return _run_async(get_tabby_models(self.base_url, self.api_key))

    def count_tokens(self, content) -> int:
        return self.handler.count_tokens(content)
