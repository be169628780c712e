"""Tabby chat provider over the OpenAI-compatible API.

Adapts a self-hosted Tabby server (https://tabby.tabbyml.com) to a generic
chat-completion interface: streamed text/reasoning/usage chunks, a plain
/completions fallback, and length/4 token estimates.

Usage:
    from tabby_provider import Tabby
    tabby = Tabby("StarCoder-1B", base_url="http://localhost:8080")
    tabby.chat([{"role": "user", "content": "Write hello world in Go"}])

    # Inside an assistant framework
    from tabby_provider import HandlerOptions, TabbyHandler
    handler = TabbyHandler(HandlerOptions(tabby_base_url="http://localhost:8080/"))
    async for chunk in handler.create_message(system_prompt, messages):
        ...

Environment:
  TABBY_BASE_URL, TABBY_API_KEY, TABBY_MODEL fill unset options.
  TABBY_ENDPOINT is read by fetch_latest_tabby_config() when no host is given.
"""

import logging

from tabby_provider._config import (
    DEFAULT_MODEL_INFO,
    HandlerOptions,
    ModelInfo,
    TabbyConfig,
    normalize_base_url,
)
from tabby_provider.provider import Tabby
from tabby_provider.providers.openai_api import (
    OpenAIHandler,
    ProviderError,
    count_tokens,
)
from tabby_provider.providers.tabby import (
    DEFAULT_BASE_URL,
    TABBY_EXTENSION_ID,
    TabbyHandler,
    fetch_latest_tabby_config,
    get_tabby_models,
)

# Silence noisy loggers
for name in ("openai", "httpx"):
    logging.getLogger(name).setLevel(logging.WARNING)

__all__ = [
    "DEFAULT_BASE_URL",
    "DEFAULT_MODEL_INFO",
    "HandlerOptions",
    "ModelInfo",
    "OpenAIHandler",
    "ProviderError",
    "TABBY_EXTENSION_ID",
    "Tabby",
    "TabbyConfig",
    "TabbyHandler",
    "count_tokens",
    "fetch_latest_tabby_config",
    "get_tabby_models",
    "normalize_base_url",
]
