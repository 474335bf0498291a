from dataclasses import dataclass
from typing import Any, Sequence

from openai import AsyncOpenAI

from .errors import ModelResponseError


DEFAULT_API_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0
DEFAULT_APP_REFERER = "https://github.com/column-generator/column-generator"
DEFAULT_APP_TITLE = "CSV Column Generator"


@dataclass(frozen=True)
class CompletionResult:
    text: str
    cost: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


def build_openrouter_client(
    *,
    api_key: str,
    base_url: str = DEFAULT_API_BASE_URL,
    timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    app_referer: str = DEFAULT_APP_REFERER,
    app_title: str = DEFAULT_APP_TITLE,
) -> AsyncOpenAI:
    # Retries belong to the batch layer; the SDK's own retries would stack a second backoff on top.
    return AsyncOpenAI(
        api_key=api_key,
        base_url=base_url,
        timeout=timeout_seconds,
        max_retries=0,
        default_headers={
            "HTTP-Referer": app_referer,
            "X-Title": app_title,
        },
    )


def build_completion_request(
    model: str,
    prompt: str,
    plugins: Sequence[dict[str, Any]] | None = None,
    web_search_options: dict[str, Any] | None = None,
) -> dict[str, Any]:
    extra_body: dict[str, Any] = {"usage": {"include": True}}
    if plugins:
        extra_body["plugins"] = [dict(plugin) for plugin in plugins]
    if web_search_options:
        extra_body["web_search_options"] = dict(web_search_options)

    return {
        "model": model,
        "messages": [{"role": "user", "content": prompt}],
        "extra_body": extra_body,
    }


def _usage_number(usage: Any, field_name: str) -> float:
    value = getattr(usage, field_name, None)
    if value is None and isinstance(getattr(usage, "model_extra", None), dict):
        value = usage.model_extra.get(field_name)
    return value or 0


def _extract_completion_result(response: Any) -> CompletionResult:
    choices = getattr(response, "choices", None)
    if not choices:
        provider_error = (getattr(response, "model_extra", None) or {}).get("error")
        if provider_error:
            raise ModelResponseError(f"Model API returned an error payload: {provider_error}")
        raise ModelResponseError("Model API response contained no choices.")

    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    if not isinstance(content, str):
        raise ModelResponseError("Model API response contained no message content.")

    usage = getattr(response, "usage", None)
    prompt_tokens = int(_usage_number(usage, "prompt_tokens"))
    completion_tokens = int(_usage_number(usage, "completion_tokens"))
    total_tokens = int(_usage_number(usage, "total_tokens")) or prompt_tokens + completion_tokens

    return CompletionResult(
        text=content.strip(),
        # OpenRouter reports the billed cost inside `usage` when usage accounting is requested.
        cost=float(_usage_number(usage, "cost")),
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
    )


class ModelInvoker:
    """Single chat-completion exchange per call. Raises on any failure and never retries."""

    def __init__(self, client: AsyncOpenAI, timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS):
        self.client = client
        self.timeout_seconds = timeout_seconds

    async def complete(
        self,
        model: str,
        prompt: str,
        plugins: Sequence[dict[str, Any]] | None = None,
        web_search_options: dict[str, Any] | None = None,
    ) -> CompletionResult:
        request = build_completion_request(model, prompt, plugins, web_search_options)
        response = await self.client.chat.completions.create(timeout=self.timeout_seconds, **request)
        return _extract_completion_result(response)
