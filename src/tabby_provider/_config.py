"""Handler options, model metadata and environment lookup."""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class ModelInfo:
    """Model metadata. Defaults are used for any model the server doesn't describe."""

    max_tokens: int = -1
    context_window: int = 128_000
    supports_images: bool = True
    supports_prompt_cache: bool = False
    input_price: float = 0.0
    output_price: float = 0.0


DEFAULT_MODEL_INFO = ModelInfo()


@dataclass
class HandlerOptions:
    # OpenAI-compatible client settings
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    openai_model_id: str | None = None
    openai_streaming_enabled: bool = True
    include_max_tokens: bool = False
    model_temperature: float | None = 0.0
    model_info: ModelInfo = DEFAULT_MODEL_INFO
    request_timeout: float | None = None
    max_retries: int = 2

    # Tabby settings, mapped onto the fields above by TabbyHandler
    tabby_base_url: str | None = None
    tabby_api_key: str | None = None
    tabby_model_id: str | None = None


@dataclass(frozen=True)
class TabbyConfig:
    endpoint: str
    api_key: str | None = None


def normalize_base_url(url: str | None) -> str | None:
    """'http://host:8080/' -> 'http://host:8080' (one trailing slash only)."""
    if url is not None and url.endswith("/"):
        return url[:-1]
    return url


def options_from_env() -> HandlerOptions:
    """Tabby fields from TABBY_BASE_URL / TABBY_API_KEY / TABBY_MODEL."""
    return HandlerOptions(
        tabby_base_url=os.environ.get("TABBY_BASE_URL"),
        tabby_api_key=os.environ.get("TABBY_API_KEY"),
        tabby_model_id=os.environ.get("TABBY_MODEL"),
    )
