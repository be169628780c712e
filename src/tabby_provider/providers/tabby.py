"""Tabby provider via its OpenAI-compatible API.

Usage: TabbyHandler(HandlerOptions(tabby_base_url="http://localhost:8080"))
Set TABBY_BASE_URL / TABBY_API_KEY / TABBY_MODEL to fill unset options.

The auth token can also be read from the Tabby editor extension through a
host object (see ExtensionHost) with fetch_latest_tabby_config().
"""

import inspect
import logging
import os
from dataclasses import replace
from typing import Any, Protocol

import httpx

from tabby_provider._config import (
    HandlerOptions,
    TabbyConfig,
    normalize_base_url,
    options_from_env,
)
from tabby_provider.providers.openai_api import OpenAIHandler, ProviderError

log = logging.getLogger(__name__)

TABBY_EXTENSION_ID = "TabbyML.vscode-tabby"
DEFAULT_BASE_URL = "http://localhost:8080"


class Extension(Protocol):
    is_active: bool
    exports: Any

    def activate(self) -> Any: ...


class ExtensionHost(Protocol):
    """What the editor host must provide: config sections and installed extensions."""

    def get_configuration(self, section: str) -> Any: ...

    def get_extension(self, extension_id: str) -> Extension | None: ...


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _setting(section, key: str, default):
    if hasattr(section, "get"):
        return section.get(key, default)
    return getattr(section, key, default)


class TabbyHandler(OpenAIHandler):
    """OpenAIHandler pointed at <tabby_base_url>/v1, always streaming."""

    label = "Tabby"

    def __init__(self, options: HandlerOptions):
        env = options_from_env()
        base_url = normalize_base_url(
            options.tabby_base_url or env.tabby_base_url or DEFAULT_BASE_URL
        )
        api_key = options.tabby_api_key
        if api_key is None:
            api_key = env.tabby_api_key
        model = options.tabby_model_id
        if model is None:
            model = env.tabby_model_id

        super().__init__(
            replace(
                options,
                openai_api_key=api_key or "",
                openai_model_id=model or "",
                openai_base_url=f"{base_url}/v1",
                openai_streaming_enabled=True,
                include_max_tokens=False,
            )
        )


async def fetch_latest_tabby_config(host: ExtensionHost | None = None) -> TabbyConfig:
    """Read the Tabby endpoint and auth token from the editor extension host.

    Without a host, falls back to TABBY_ENDPOINT (or TABBY_BASE_URL) and
    TABBY_API_KEY. Host errors propagate.
    """
    if host is None:
        endpoint = os.environ.get("TABBY_ENDPOINT") or os.environ.get(
            "TABBY_BASE_URL", ""
        )
        return TabbyConfig(endpoint, os.environ.get("TABBY_API_KEY"))

    endpoint = _setting(host.get_configuration("tabby"), "endpoint", "")

    extension = host.get_extension(TABBY_EXTENSION_ID)
    if extension is None:
        return TabbyConfig(endpoint)

    if extension.is_active:
        api = extension.exports
    else:
        api = await _maybe_await(extension.activate())

    read_token = getattr(api, "try_read_authentication_token", None)
    if callable(read_token):
        result = await _maybe_await(read_token())
        if result is None:
            raise ProviderError("Tabby extension returned no authentication result")
        token = _setting(result, "token", None)
        return TabbyConfig(endpoint, token)
    return TabbyConfig(endpoint)


async def get_tabby_models(
    base_url: str | None = DEFAULT_BASE_URL,
    api_key: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> list[str]:
    """Chat model names from GET <base_url>/v1beta/models. Returns [] on any failure."""
    if not base_url:
        return []

    url = f"{normalize_base_url(base_url)}/v1beta/models"
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    # "Bearer " with an empty token is an illegal header value
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    client = http_client or httpx.AsyncClient()
    try:
        response = await client.get(url, headers=headers)
        if not response.is_success:
            log.debug("Tabby model listing returned HTTP %d", response.status_code)
            return []
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        log.debug("Tabby model listing failed: %s", exc)
        return []
    finally:
        if http_client is None:
            await client.aclose()

    if isinstance(data, dict) and isinstance(data.get("chat"), list):
        return data["chat"]
    return []
