"""Model transport: provider resolution and litellm-backed completions."""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field

from .report import AgentError, ConfigError

logger = logging.getLogger(__name__)

PROVIDERS = ("lmstudio", "openrouter", "xai", "generic")
DEFAULT_LMSTUDIO_URL = "http://127.0.0.1:1234"
DEFAULT_MODELS = {"xai": "grok-3-latest"}
API_KEY_ENV = {
    "openrouter": "OPENROUTER_API_KEY",
    "xai": "XAI_API_KEY",
    "generic": "OPENAI_API_KEY",
}


@dataclass
class ToolCallFragment:
    """A piece of a tool call as streamed, keyed by its position in the response."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class StreamChunk:
    text: str | None = None
    tool_calls: list[ToolCallFragment] = field(default_factory=list)


@dataclass
class ModelConfig:
    provider: str
    model: str
    api_key: str | None = None
    base_url: str | None = None
    max_output_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    seed: int | None = None


def resolve_model_config(
    provider: str,
    model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    **sampling,
) -> ModelConfig:
    """Fill in provider defaults and check that the provider can be reached.

    API keys come from the explicit argument first, then the provider's
    environment variable.

    Raises:
        ConfigError: unknown provider, or a required model/key/URL is missing.
    """
    if provider not in PROVIDERS:
        raise ConfigError(f"unknown provider {provider!r}")

    model = model or DEFAULT_MODELS.get(provider)
    if not model:
        raise ConfigError(f"--model is required when --provider is {provider}")

    if provider == "lmstudio":
        base_url = base_url or DEFAULT_LMSTUDIO_URL
        api_key = api_key or "lm-studio"
    else:
        env_var = API_KEY_ENV[provider]
        api_key = api_key or os.environ.get(env_var)
        if not api_key:
            raise ConfigError(
                f"--api-key or {env_var} env var required for {provider} provider"
            )
        if provider == "generic" and not base_url:
            raise ConfigError("--base-url is required when --provider is generic")

    return ModelConfig(
        provider=provider, model=model, api_key=api_key, base_url=base_url, **sampling
    )


def _litellm_target(config: ModelConfig) -> tuple[str, dict]:
    """Map a provider/model pair onto a litellm model string and connection kwargs."""
    provider, model_id = config.provider, config.model
    kwargs: dict = {"api_key": config.api_key}
    if provider == "lmstudio":
        model_str = f"openai/{model_id}"
        kwargs["api_base"] = f"{config.base_url.rstrip('/')}/v1"
    elif provider == "openrouter":
        # Only strip a doubled "openrouter/" prefix; org names stay intact.
        bare_id = (
            model_id[len("openrouter/") :]
            if model_id.startswith("openrouter/openrouter/")
            else model_id
        )
        model_str = f"openrouter/{bare_id}"
        if config.base_url:
            kwargs["api_base"] = config.base_url
    elif provider == "xai":
        model_str = f"xai/{model_id.removeprefix('xai/')}"
        if config.base_url:
            kwargs["api_base"] = config.base_url
    else:
        model_str = f"openai/{model_id}"
        kwargs["api_base"] = config.base_url
    return model_str, kwargs


async def _until_cancelled(awaitable, token):
    """Await ``awaitable`` unless ``token`` fires first."""
    if token is None:
        return await awaitable
    if token.cancelled:
        raise AgentError("request cancelled")
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if not task.done():
        task.cancel()
        raise AgentError("request cancelled")
    return task.result()


async def _close_stream(response) -> None:
    aclose = getattr(response, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug("closing LLM stream failed: %s", e)


class LLMClient:
    """Talks to the configured model through litellm."""

    def __init__(self, config: ModelConfig):
        self.config = config

    def _request_kwargs(self, messages: list, **extra) -> dict:
        import litellm

        litellm.suppress_debug_info = True

        model_str, kwargs = _litellm_target(self.config)
        request = dict(model=model_str, messages=messages, **kwargs)
        if self.config.max_output_tokens is not None:
            request["max_tokens"] = self.config.max_output_tokens
        for key in ("temperature", "top_p", "seed"):
            val = getattr(self.config, key)
            if val is not None:
                request[key] = val
        request.update(extra)
        return request

    async def stream_completion(self, messages: list, tools: list, token=None):
        """Yield StreamChunk objects for one streamed response.

        Stops quietly once the token is cancelled. Transport errors are raised
        as AgentError.
        """
        import litellm

        extra = {"stream": True}
        if tools:
            extra["tools"] = tools
            extra["tool_choice"] = "auto"
        request = self._request_kwargs(messages, **extra)
        logger.debug("streaming from %s (%d messages)", request["model"], len(messages))
        try:
            response = await _until_cancelled(litellm.acompletion(**request), token)
        except AgentError:
            if token is not None and token.cancelled:
                return
            raise
        except Exception as e:
            raise AgentError(f"LLM call failed: {e}") from e

        try:
            async for raw in response:
                if token is not None and token.cancelled:
                    return
                chunk = _normalize_chunk(raw)
                if chunk is not None:
                    yield chunk
        except Exception as e:
            raise AgentError(f"LLM stream failed: {e}") from e
        finally:
            await _close_stream(response)

    async def complete(self, messages: list, token=None, **extra) -> str:
        """One non-streamed completion; returns the reply text."""
        import litellm

        request = self._request_kwargs(messages, **extra)
        try:
            response = await _until_cancelled(litellm.acompletion(**request), token)
        except AgentError:
            raise
        except Exception as e:
            raise AgentError(f"LLM call failed: {e}") from e
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise AgentError(f"LLM returned no choices: {e}") from e
        return content or ""

    async def generate_json(self, messages: list, token=None) -> dict:
        """Ask for a JSON object reply and parse it.

        Raises:
            AgentError: the call failed or the reply is not a JSON object.
        """
        text = await self.complete(
            messages, token, response_format={"type": "json_object"}
        )
        text = text.strip()
        if text.startswith("```"):
            text = text.strip("`").removeprefix("json").strip()
        if not text:
            raise AgentError("model returned an empty JSON reply")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise AgentError(f"model returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise AgentError("model returned JSON that is not an object")
        return data


def _normalize_chunk(raw) -> StreamChunk | None:
    choices = getattr(raw, "choices", None)
    if not choices:
        return None
    delta = getattr(choices[0], "delta", None)
    if delta is None:
        return None
    fragments = []
    for tc in getattr(delta, "tool_calls", None) or []:
        fn = getattr(tc, "function", None)
        fragments.append(
            ToolCallFragment(
                index=getattr(tc, "index", None) or 0,
                id=getattr(tc, "id", None),
                name=getattr(fn, "name", None) if fn else None,
                arguments=getattr(fn, "arguments", None) if fn else None,
            )
        )
    text = getattr(delta, "content", None)
    if not text and not fragments:
        return None
    return StreamChunk(text=text, tool_calls=fragments)
