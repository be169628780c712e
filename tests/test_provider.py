"""Tests for the Tabby facade and message conversion (no server needed)."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from tabby_provider import ProviderError, Tabby
from tabby_provider.messages import (
    content_text,
    convert_to_openai_messages,
    flatten_to_prompt,
)


class _Stream:
    def __init__(self, chunks):
        self.chunks = chunks

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        pass

    async def __aiter__(self):
        for c in self.chunks:
            yield c


def _stream(*texts, usage=(10, 5)):
    chunks = []
    for t in texts:
        delta = SimpleNamespace(content=t, reasoning_content=None)
        choice = SimpleNamespace(delta=delta)
        chunks.append(SimpleNamespace(choices=[choice], usage=None))
    if usage:
        u = SimpleNamespace(prompt_tokens=usage[0], completion_tokens=usage[1])
        chunks.append(SimpleNamespace(choices=[], usage=u))
    return _Stream(chunks)


def _tabby(**kwargs):
    with patch.dict("os.environ", {}, clear=True):
        tabby = Tabby(**kwargs)
    tabby.handler._client = MagicMock()
    return tabby


# --- Message conversion ---


class TestConvertMessages:
    def test_string_content_passthrough(self):
        messages = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]
        assert convert_to_openai_messages(messages) == messages

    def test_text_and_image_blocks(self):
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "What is this?"},
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": "image/jpeg",
                            "data": "AAAA",
                        },
                    },
                ],
            }
        ]
        out = convert_to_openai_messages(messages)
        assert out == [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "What is this?"},
                    {
                        "type": "image_url",
                        "image_url": {"url": "data:image/jpeg;base64,AAAA"},
                    },
                ],
            }
        ]

    def test_tool_use_and_result(self):
        messages = [
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "Reading the file."},
                    {
                        "type": "tool_use",
                        "id": "call_1",
                        "name": "read_file",
                        "input": {"path": "main.go"},
                    },
                ],
            },
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Here you go"},
                    {
                        "type": "tool_result",
                        "tool_use_id": "call_1",
                        "content": [{"type": "text", "text": "package main"}],
                    },
                ],
            },
        ]
        out = convert_to_openai_messages(messages)

        assert out[0]["role"] == "assistant"
        assert out[0]["content"] == "Reading the file."
        call = out[0]["tool_calls"][0]
        assert call["id"] == "call_1"
        assert call["function"]["name"] == "read_file"
        assert json.loads(call["function"]["arguments"]) == {"path": "main.go"}

        # Tool results come before the rest of the user turn
        assert out[1] == {
            "role": "tool",
            "tool_call_id": "call_1",
            "content": "package main",
        }
        assert out[2] == {
            "role": "user",
            "content": [{"type": "text", "text": "Here you go"}],
        }

    def test_assistant_tool_only_has_no_content(self):
        messages = [
            {
                "role": "assistant",
                "content": [{"type": "tool_use", "id": "c", "name": "ls", "input": {}}],
            }
        ]
        assert convert_to_openai_messages(messages)[0]["content"] is None

    def test_content_text(self):
        blocks = [
            {"type": "text", "text": "a"},
            {"type": "image", "source": {}},
            {"type": "tool_result", "tool_use_id": "x", "content": "b"},
        ]
        assert content_text(blocks) == "a\nb"
        assert content_text("plain") == "plain"
        assert content_text(None) == ""

    def test_flatten_to_prompt(self):
        prompt = flatten_to_prompt(
            "Be brief.",
            [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello"},
                {"role": "user", "content": [{"type": "text", "text": "Sort a list"}]},
            ],
        )
        assert prompt == (
            "System: Be brief.\n\nUser: Hi\n\nAssistant: Hello\n\n"
            "User: Sort a list\n\nAssistant:"
        )

    def test_flatten_without_system(self):
        prompt = flatten_to_prompt("", [{"role": "user", "content": "Hi"}])
        assert prompt == "User: Hi\n\nAssistant:"


# --- Tabby facade ---


class TestTabbyInit:
    def test_defaults(self):
        tabby = _tabby()
        assert tabby.model == ""
        assert tabby.base_url == "http://localhost:8080"
        assert tabby.api_key == ""
        assert tabby.total_input_tokens == 0

    def test_explicit_args(self):
        tabby = _tabby(model="StarCoder-1B", base_url="http://tabby:8080/", api_key="k")
        assert tabby.model == "StarCoder-1B"
        assert tabby.base_url == "http://tabby:8080"
        assert tabby.handler.options.openai_base_url == "http://tabby:8080/v1"
        assert tabby.api_key == "k"

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError, match="max_concurrent"):
            _tabby(max_concurrent=0)


class TestTabbyChat:
    def test_chat_joins_text_and_tracks_usage(self):
        tabby = _tabby(model="StarCoder-1B")
        tabby.handler._client.chat.completions.create = AsyncMock(
            return_value=_stream("<think>hm</think>", "fmt.", "Println()")
        )

        reply = tabby.chat([{"role": "user", "content": "hello world in Go"}])

        assert reply == "fmt.Println()"
        assert tabby.total_input_tokens == 10
        assert tabby.total_output_tokens == 5

    def test_totals_accumulate(self):
        tabby = _tabby()
        tabby.handler._client.chat.completions.create = AsyncMock(
            side_effect=lambda **kwargs: _stream("ok")
        )

        tabby.chat([{"role": "user", "content": "a"}])
        tabby.chat([{"role": "user", "content": "b"}])

        assert tabby.total_input_tokens == 20
        assert tabby.total_output_tokens == 10

    def test_stream_yields_chunks(self):
        tabby = _tabby()
        tabby.handler._client.chat.completions.create = AsyncMock(
            return_value=_stream("a", "b")
        )

        async def run():
            return [c async for c in tabby.stream([{"role": "user", "content": "x"}])]

        chunks = asyncio.run(run())
        assert [c["type"] for c in chunks] == ["text", "text", "usage"]
        assert tabby.total_output_tokens == 5

    def test_provider_error_raised_once(self):
        tabby = _tabby()
        err = openai.APIConnectionError(request=httpx.Request("POST", "http://x"))
        tabby.handler._client.chat.completions.create = AsyncMock(side_effect=err)
        tabby.handler._client.completions.create = AsyncMock(side_effect=err)

        with pytest.raises(ProviderError):
            tabby.chat([{"role": "user", "content": "x"}])
        assert tabby.handler._client.completions.create.call_count == 1

    def test_complete(self):
        tabby = _tabby()
        msg = SimpleNamespace(content="4")
        tabby.handler._client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(choices=[SimpleNamespace(message=msg)])
        )
        assert tabby.complete("2+2?") == "4"

    def test_count_tokens(self):
        assert _tabby().count_tokens("a" * 10) == 3


class TestTabbyGenerate:
    def test_one_reply_per_prompt_in_order(self):
        tabby = _tabby()

        def reply(**kwargs):
            return _stream(kwargs["messages"][-1]["content"].upper(), usage=(2, 1))

        tabby.handler._client.chat.completions.create = AsyncMock(side_effect=reply)

        results = tabby.generate(["a", "b", "c"], system_prompt="sys", silent=True)

        assert results == ["A", "B", "C"]
        assert tabby.total_input_tokens == 6
        assert tabby.total_output_tokens == 3
        first = tabby.handler._client.chat.completions.create.call_args_list[0]
        assert first.kwargs["messages"][0] == {"role": "system", "content": "sys"}

    def test_string_input_wraps_to_list(self):
        tabby = _tabby()
        tabby.handler._client.chat.completions.create = AsyncMock(
            return_value=_stream("only")
        )
        assert tabby.generate("single prompt", silent=True) == ["only"]

    def test_prints_summary(self, capsys):
        tabby = _tabby()
        tabby.handler._client.chat.completions.create = AsyncMock(
            return_value=_stream("x", usage=(8, 4))
        )
        tabby.generate("p")
        out = capsys.readouterr().out
        assert "8 in | 4 out" in out

    def test_silent(self, capsys):
        tabby = _tabby()
        tabby.handler._client.chat.completions.create = AsyncMock(
            return_value=_stream("x")
        )
        tabby.generate("p", silent=True)
        assert capsys.readouterr().out == ""


class TestTabbyListModels:
    def test_uses_base_url_and_key(self):
        tabby = _tabby(base_url="http://tabby:8080/", api_key="k")
        with patch(
            "tabby_provider.provider.get_tabby_models",
            AsyncMock(return_value=["Qwen2-1.5B-Instruct"]),
        ) as mock_models:
            assert tabby.list_models() == ["Qwen2-1.5B-Instruct"]
        mock_models.assert_awaited_once_with("http://tabby:8080", "k")
