import asyncio
from types import SimpleNamespace

import pytest

from column_generator.errors import ModelResponseError
from column_generator.model_client import (
    CompletionResult,
    ModelInvoker,
    build_completion_request,
    build_openrouter_client,
)


class FakeCompletionsAPI:
    def __init__(self, response):
        self.response = response
        self.last_request = None

    async def create(self, **kwargs):
        self.last_request = kwargs
        return self.response


class FakeAsyncClient:
    def __init__(self, response):
        self.chat = SimpleNamespace(completions=FakeCompletionsAPI(response))


def _response(content, usage=None, choices=True):
    message = SimpleNamespace(content=content)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)] if choices else [],
        usage=usage,
        model_extra={},
    )


def test_build_completion_request_requests_usage_accounting():
    request = build_completion_request("openai/gpt-4o-mini", "Hello")

    assert request["model"] == "openai/gpt-4o-mini"
    assert request["messages"] == [{"role": "user", "content": "Hello"}]
    assert request["extra_body"] == {"usage": {"include": True}}


def test_build_completion_request_adds_plugins_and_search_options():
    request = build_completion_request(
        "perplexity/sonar",
        "Hello",
        plugins=({"id": "web", "max_results": 3},),
        web_search_options={"search_context_size": "low"},
    )

    assert request["extra_body"]["plugins"] == [{"id": "web", "max_results": 3}]
    assert request["extra_body"]["web_search_options"] == {"search_context_size": "low"}


def test_build_completion_request_omits_empty_plugin_list():
    request = build_completion_request("openai/gpt-4o-mini", "Hello", plugins=[])

    assert "plugins" not in request["extra_body"]


def test_complete_returns_trimmed_text_and_usage():
    usage = SimpleNamespace(prompt_tokens=12, completion_tokens=5, total_tokens=17, cost=0.00042)
    client = FakeAsyncClient(_response("  Summary text \n", usage=usage))
    invoker = ModelInvoker(client, timeout_seconds=30.0)

    result = asyncio.run(invoker.complete("openai/gpt-4o-mini", "Summarise it"))

    assert result == CompletionResult(
        text="Summary text",
        cost=0.00042,
        prompt_tokens=12,
        completion_tokens=5,
        total_tokens=17,
    )
    assert client.chat.completions.last_request["timeout"] == 30.0
    assert client.chat.completions.last_request["messages"][0]["content"] == "Summarise it"


def test_complete_defaults_usage_to_zero_when_missing():
    client = FakeAsyncClient(_response("ok", usage=None))

    result = asyncio.run(ModelInvoker(client).complete("m", "p"))

    assert result == CompletionResult(text="ok")


def test_complete_derives_total_tokens_when_provider_omits_it():
    usage = SimpleNamespace(prompt_tokens=4, completion_tokens=6, total_tokens=None)
    client = FakeAsyncClient(_response("ok", usage=usage))

    result = asyncio.run(ModelInvoker(client).complete("m", "p"))

    assert result.total_tokens == 10
    assert result.cost == 0.0


def test_complete_raises_when_response_has_no_choices():
    client = FakeAsyncClient(_response("ignored", choices=False))

    with pytest.raises(ModelResponseError, match="no choices"):
        asyncio.run(ModelInvoker(client).complete("m", "p"))


def test_complete_raises_for_error_payload_in_successful_response():
    response = SimpleNamespace(choices=None, usage=None, model_extra={"error": {"code": 502, "message": "upstream"}})
    client = FakeAsyncClient(response)

    with pytest.raises(ModelResponseError, match="error payload"):
        asyncio.run(ModelInvoker(client).complete("m", "p"))


def test_complete_raises_when_message_content_is_missing():
    client = FakeAsyncClient(_response(None))

    with pytest.raises(ModelResponseError, match="no message content"):
        asyncio.run(ModelInvoker(client).complete("m", "p"))


def test_build_openrouter_client_disables_sdk_retries():
    client = build_openrouter_client(api_key="sk-or-test", timeout_seconds=12.0, app_title="Test Title")

    assert client.max_retries == 0
    assert client.timeout == 12.0
    assert str(client.base_url).startswith("https://openrouter.ai/api/v1")
    assert client.default_headers["X-Title"] == "Test Title"
